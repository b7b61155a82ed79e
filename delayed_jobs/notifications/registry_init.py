"""
Notifier registry initialization.

Registers the notifier selected by settings so units of work can look it up
by name.
"""

from delayed_jobs.config.logging import get_logger
from delayed_jobs.config.settings import NotifierType, Settings
from delayed_jobs.core.registries import notifier_registry
from delayed_jobs.notifications.providers import HttpSmsNotifier, LogNotifier

logger = get_logger(__name__)


def register_notifiers(settings: Settings) -> None:
    """Register the log notifier, and the SMS notifier when it is configured."""
    if notifier_registry.is_frozen():
        return

    if NotifierType.LOG.value not in notifier_registry:
        notifier_registry.register(NotifierType.LOG.value, LogNotifier())

    if (
        settings.notifier == NotifierType.HTTP_SMS
        and NotifierType.HTTP_SMS.value not in notifier_registry
    ):
        notifier_registry.register(
            NotifierType.HTTP_SMS.value, HttpSmsNotifier.from_settings(settings)
        )

    logger.info(
        "Notifiers registered",
        registered=notifier_registry.list(),
        selected=settings.notifier.value,
    )
