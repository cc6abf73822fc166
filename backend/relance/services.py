from dataclasses import dataclass, field
from typing import Callable, Optional
import datetime as dt

from .auth import TokenAuthProvider
from .delivery import DeliveryGateway, LoggingDeliveryGateway
from .evaluator import StopConditionEvaluator
from .history import RelanceHistory
from .scheduler import ReminderScheduler
from .settings import Settings, settings as default_settings
from .store import ReminderStore
from .utils import ensure_dir, utcnow


@dataclass
class RelanceServices:
    settings: Settings
    store: ReminderStore
    history: RelanceHistory
    gateway: DeliveryGateway
    evaluator: StopConditionEvaluator
    scheduler: ReminderScheduler
    auth: TokenAuthProvider
    clock: Callable[[], dt.datetime] = field(default=utcnow)


def build_services(config: Optional[Settings] = None, gateway: Optional[DeliveryGateway] = None,
                   clock: Callable[[], dt.datetime] = utcnow) -> RelanceServices:
    """Wire the relance components once; the app keeps the result on ``app.state``."""
    config = config or default_settings
    ensure_dir(config.DATA_DIR)
    store = ReminderStore(config.DATA_DIR)
    history = RelanceHistory(config.DATA_DIR)
    gateway = gateway or LoggingDeliveryGateway()
    return RelanceServices(
        settings=config,
        store=store,
        history=history,
        gateway=gateway,
        evaluator=StopConditionEvaluator(store, history, clock=clock),
        scheduler=ReminderScheduler(
            store,
            gateway,
            history,
            templates=config.RELANCE_TEMPLATES,
            sender=config.EMAIL_SENDER,
            max_relances=config.RELANCE_MAX_COUNT,
        ),
        auth=TokenAuthProvider(config.API_TOKENS),
        clock=clock,
    )
