import logging
from typing import Dict, Optional

from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy.engine import Engine

from orderflow.adapters.mock_email import MockEmailSender
from orderflow.adapters.mock_payment import MockPaymentGateway
from orderflow.config import Settings, settings as default_settings
from orderflow.db import init_db, make_engine, make_session_factory
from orderflow.db.gateway import PersistenceGateway
from orderflow.jobs.base import JobState, PollingJob
from orderflow.jobs.cart_reminder import CartReminderJob
from orderflow.jobs.reservation_expiration import ReservationExpirationJob
from orderflow.jobs.state_timeout import StateTimeoutJob
from orderflow.services.cart_recovery_service import CartRecoveryService
from orderflow.services.notification_service import OrderNotifier
from orderflow.services.order_service import OrderService
from orderflow.services.order_state_machine import OrderStateMachine
from orderflow.services.payment_service import PaymentService
from orderflow.services.promotion_service import PromotionService
from orderflow.services.reservation_service import StockReservationService

log = logging.getLogger(__name__)


class Container:
    """
    Composition root: one gateway, the engines built on it, their
    collaborators and the enforcement jobs with their scheduler.
    """

    def __init__(
        self,
        config: Optional[Settings] = None,
        engine: Optional[Engine] = None,
        email_sender=None,
        payment_gateway=None,
        scheduler: Optional[BackgroundScheduler] = None,
    ):
        self.config = config or default_settings
        cfg = self.config

        self.engine = engine or make_engine(cfg.DATABASE_URL)
        self.session_factory = make_session_factory(self.engine)
        self.gateway = PersistenceGateway(
            self.session_factory, lock_dir=cfg.LOCK_DIR, lock_timeout=cfg.LOCK_TIMEOUT_SECONDS
        )

        self.email_sender = email_sender or MockEmailSender(cfg.EMAIL_MOCK_DELAY_MS)
        self.payment_gateway = payment_gateway or MockPaymentGateway(cfg.PAYMENT_MOCK_DELAY_MS)

        self.reservations = StockReservationService(self.gateway, cfg.RESERVATION_TTL_SECONDS)
        self.notifier = OrderNotifier(self.gateway, self.email_sender)
        self.state_machine = OrderStateMachine(
            self.gateway,
            self.reservations,
            preparing_accepts_confirmed=cfg.PREPARING_ACCEPTS_CONFIRMED,
        )
        self.promotions = PromotionService(self.gateway)
        self.orders = OrderService(
            self.gateway, self.reservations, self.state_machine, self.promotions
        )
        self.payments = PaymentService(
            self.gateway,
            self.payment_gateway,
            self.reservations,
            self.state_machine,
            checkout_window_seconds=cfg.CHECKOUT_WINDOW_SECONDS,
            retry_window_seconds=cfg.PAYMENT_RETRY_WINDOW_SECONDS,
        )
        self.recovery = CartRecoveryService(
            self.gateway,
            self.email_sender,
            app_url=cfg.APP_URL,
            min_hours=cfg.CART_ABANDONED_MIN_HOURS,
            max_hours=cfg.CART_ABANDONED_MAX_HOURS,
            token_ttl_days=cfg.RECOVERY_TOKEN_TTL_DAYS,
            batch_size=cfg.CART_SCAN_BATCH_SIZE,
        )

        self.state_machine.add_listener(self.notifier.order_status_changed)
        self.state_machine.add_listener(self.recovery.on_order_transition)

        self.scheduler = scheduler or BackgroundScheduler(timezone="UTC")
        self.jobs: Dict[str, PollingJob] = {
            job.name: job
            for job in (
                ReservationExpirationJob(
                    self.scheduler, self.reservations, cfg.RESERVATION_EXPIRY_INTERVAL_SECONDS
                ),
                StateTimeoutJob(
                    self.scheduler,
                    self.gateway,
                    self.state_machine,
                    cfg.STATE_TIMEOUT_INTERVAL_SECONDS,
                    checkout_timeout_seconds=cfg.CHECKOUT_TIMEOUT_SECONDS,
                    preparing_alert_seconds=cfg.PREPARING_ALERT_SECONDS,
                ),
                CartReminderJob(
                    self.scheduler, self.recovery, cfg.CART_REMINDER_INTERVAL_SECONDS
                ),
            )
        }

    def init_db(self, reset: Optional[bool] = None):
        init_db(self.engine, reset=reset)

    def start_jobs(self):
        if not self.scheduler.running:
            self.scheduler.start()
        for job in self.jobs.values():
            job.start()
        log.info("Enforcement jobs started: %s", ", ".join(self.jobs))

    def stop_jobs(self):
        for job in self.jobs.values():
            if job.state is JobState.RUNNING:
                job.stop()
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def get_job(self, name: str) -> Optional[PollingJob]:
        return self.jobs.get(name)

    def dispose(self):
        self.stop_jobs()
        self.engine.dispose()
