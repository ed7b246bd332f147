import logging
from typing import Callable, List, Optional

from ..loan import Loan

logger = logging.getLogger(__name__)

# Events emitted after a committed loan transition.
LOAN_ISSUED = "loan.issued"
LOAN_RENEWED = "loan.renewed"
LOAN_RETURNED = "loan.returned"
FINE_UPDATED = "loan.fine_updated"

Handler = Callable[[str, Loan], None]


def log_notification(event: str, loan: Loan) -> None:
    """Default handler: record the event so it shows up in the service log."""
    logger.info(f"[notify] {event} loan={loan.id} borrower={loan.borrower_id} book={loan.book_id}")


class NotificationDispatcher:
    """Fire-and-forget fan-out to email/SMS senders or other subscribers.

    Handler failures are logged and dropped: a loan transition that already
    committed is never undone because a message could not be sent.
    """

    def __init__(self, handlers: Optional[List[Handler]] = None) -> None:
        self.handlers: List[Handler] = list(handlers) if handlers is not None else [log_notification]

    def subscribe(self, handler: Handler) -> None:
        self.handlers.append(handler)

    def dispatch(self, event: str, loan: Loan) -> None:
        for handler in list(self.handlers):
            try:
                handler(event, loan)
            except Exception as e:
                logger.warning(f"Notification handler failed for {event} on loan {loan.id}: {e}")
