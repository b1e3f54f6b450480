"""Process-wide wiring of stores, gateway, emitter and services.

One Runtime lives for the life of the process (on ``app.state`` for the API,
built per invocation by the CLI). Services are cheap and built per session.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Callable

from sqlalchemy.engine import Engine
from sqlalchemy.orm import Session, sessionmaker

from firearms_compliance.compliance.settings_store import ComplianceConfigStore, ComplianceSettings
from firearms_compliance.config import Settings, get_settings
from firearms_compliance.database import get_engine, make_session_factory
from firearms_compliance.events.emitter import CrmSyncClient, ExternalSyncEmitter, LoggingCrmSync
from firearms_compliance.ffl import FflDirectory, StaticFflDirectory
from firearms_compliance.gateway.adapter import PaymentGatewayAdapter
from firearms_compliance.gateway.authorize_net import AuthorizeNetGateway
from firearms_compliance.gateway.base import PaymentGateway
from firearms_compliance.gateway.stub import StubGateway
from firearms_compliance.services.checkout import CheckoutService
from firearms_compliance.services.locking import OrderLockRegistry
from firearms_compliance.services.order_service import OrderService
from firearms_compliance.services.recovery import RecoveryReport, RecoveryService
from firearms_compliance.services.staff_actions import StaffActionService
from firearms_compliance.time_utils import Clock, utcnow

logger = logging.getLogger(__name__)


def default_compliance_settings(settings: Settings) -> ComplianceSettings:
    """Policy used to seed the store when no version exists yet."""
    return ComplianceSettings(
        window_days=settings.compliance_window_days,
        firearm_limit=settings.compliance_firearm_limit,
        multi_firearm_hold_enabled=settings.feature_multi_firearm_hold,
        ffl_hold_enabled=settings.feature_ffl_hold,
        updated_by="environment",
    )


def build_gateway(settings: Settings) -> PaymentGateway:
    """Create the configured payment gateway."""
    provider = settings.gateway_provider.lower()
    if provider == "stub":
        return StubGateway()
    if provider == "authorize_net":
        return AuthorizeNetGateway(
            settings.anet_api_login_id,
            settings.anet_transaction_key,
            environment=settings.anet_env,
            timeout_seconds=settings.gateway_retry.timeout_seconds,
        )
    raise ValueError(f"Unknown GATEWAY_PROVIDER: {settings.gateway_provider}")


def build_ffl_directory(settings: Settings) -> FflDirectory:
    if settings.ffl_directory_path:
        return StaticFflDirectory.from_json_file(settings.ffl_directory_path)
    logger.warning("FFL_DIRECTORY_PATH not set; FFL directory is empty")
    return StaticFflDirectory()


@dataclass
class Runtime:
    """Long-lived collaborators shared by all requests."""

    settings: Settings
    engine: Engine
    session_factory: sessionmaker[Session]
    config_store: ComplianceConfigStore
    gateway: PaymentGateway
    emitter: ExternalSyncEmitter
    ffl_directory: FflDirectory
    locks: OrderLockRegistry = field(default_factory=OrderLockRegistry)
    clock: Clock = utcnow
    sleep: Callable[[float], None] = time.sleep

    def order_service(self, session: Session) -> OrderService:
        adapter = PaymentGatewayAdapter(
            session, self.gateway, self.settings.gateway_retry, sleep=self.sleep
        )
        return OrderService(session, adapter, self.locks, self.emitter, clock=self.clock)

    def checkout_service(self, session: Session) -> CheckoutService:
        return CheckoutService(
            session,
            self.config_store,
            self.order_service(session),
            ffl_directory=self.ffl_directory,
            clock=self.clock,
        )

    def staff_actions(self, session: Session) -> StaffActionService:
        return StaffActionService(
            session, self.order_service(session), self.ffl_directory, clock=self.clock
        )

    def recovery_service(self, session: Session) -> RecoveryService:
        return RecoveryService(
            session,
            self.order_service(session),
            self.emitter,
            pending_stale_seconds=self.settings.pending_stale_seconds,
            max_attempts=self.settings.recovery_max_attempts,
            clock=self.clock,
        )

    def run_recovery(self) -> RecoveryReport:
        """One recovery pass in its own session."""
        with self.session_factory() as session:
            return self.recovery_service(session).run_once()

    def close(self) -> None:
        self.emitter.shutdown()
        close = getattr(self.gateway, "close", None)
        if callable(close):
            close()
        self.engine.dispose()


def build_runtime(
    settings: Settings | None = None,
    *,
    engine: Engine | None = None,
    gateway: PaymentGateway | None = None,
    crm_client: CrmSyncClient | None = None,
    ffl_directory: FflDirectory | None = None,
    clock: Clock = utcnow,
    sleep: Callable[[float], None] = time.sleep,
) -> Runtime:
    """Assemble a Runtime, filling unspecified collaborators from settings."""
    settings = settings or get_settings()
    engine = engine or get_engine(settings.database_url)
    session_factory = make_session_factory(engine)

    return Runtime(
        settings=settings,
        engine=engine,
        session_factory=session_factory,
        config_store=ComplianceConfigStore(session_factory, default_compliance_settings(settings)),
        gateway=gateway or build_gateway(settings),
        emitter=ExternalSyncEmitter(crm_client or LoggingCrmSync(), settings.sync, clock=clock),
        ffl_directory=ffl_directory if ffl_directory is not None else build_ffl_directory(settings),
        clock=clock,
        sleep=sleep,
    )
