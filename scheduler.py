import logging
from apscheduler.schedulers.background import BackgroundScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from balances import recalculate_balances
from config import get_settings
from database import session_scope
from recurrence import TemplateEngine, local_today
from repository import AccountRepository
from services import ProjectionService, RecurrenceRuleService


logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)


class SchedulerManager:
    def __init__(self) -> None:
        settings = get_settings()
        self.scheduler = BackgroundScheduler(timezone=settings.timezone)

    def _extend_rules(self, source: str = "manual") -> None:
        logger.info(f"scheduler_run: job=extend_rules source={source}")
        with session_scope() as session:
            count = RecurrenceRuleService(session).extend_all(get_settings().horizon_months)
            logger.info(f"scheduler_run: job=extend_rules source={source} created={count}")

    def _post_templates(self, source: str = "manual") -> None:
        with session_scope() as session:
            count = TemplateEngine(session).post_due(local_today())
            logger.info(f"scheduler_run: job=post_templates source={source} posted={count}")

    def _recalculate(self, source: str = "manual") -> None:
        with session_scope() as session:
            drift = recalculate_balances(session)
            logger.info(f"scheduler_run: job=recalculate source={source} drift={drift}")

    def _check_balances(self, source: str = "manual") -> None:
        today = local_today()
        with session_scope() as session:
            for user_id in AccountRepository(session).user_ids():
                alert = ProjectionService(session, user_id).alert(today)
                if alert is None:
                    continue
                logger.warning(
                    f"negative_balance_ahead: user={user_id} "
                    f"date={alert.first_negative_date.isoformat()} "
                    f"days={alert.days_until} balance_cents={alert.projected_balance_cents}"
                )

    def start(self) -> None:
        self._extend_rules("startup")

        self.scheduler.add_job(
            self._extend_rules,
            CronTrigger(hour=3, minute=15),
            args=["daily_03:15"],
            id="extend_rules_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._post_templates,
            CronTrigger(hour=3, minute=30),
            args=["daily_03:30"],
            id="post_templates_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._check_balances,
            CronTrigger(hour=8, minute=0),
            args=["daily_08:00"],
            id="negative_balance_daily",
            replace_existing=True,
            misfire_grace_time=3600,
        )
        self.scheduler.add_job(
            self._recalculate,
            IntervalTrigger(hours=1),
            args=["hourly_safety_net"],
            id="recalculate_hourly",
            replace_existing=True,
            misfire_grace_time=300,
        )

        self.scheduler.start()
        logger.info("Scheduler started with daily extension, template posting and hourly recalculation")

    def stop(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
            logger.info("Scheduler stopped")
