from app.core.config import settings
from app.domains.notifications.dispatcher import NotificationDispatcher
from app.utils.email import build_email_sender

_dispatcher: NotificationDispatcher | None = None


def get_notifier() -> NotificationDispatcher:
    global _dispatcher
    if _dispatcher is None:
        _dispatcher = NotificationDispatcher(
            email_sender=build_email_sender(),
            max_workers=settings.notification_workers,
        )
    return _dispatcher


def shutdown_notifier() -> None:
    global _dispatcher
    if _dispatcher is not None:
        _dispatcher.shutdown(wait=False)
        _dispatcher = None
