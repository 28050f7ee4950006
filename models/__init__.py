from .alert import AlertEvent, AlertRule  # noqa: F401
from .mention import Mention  # noqa: F401
from .notification import Notification, Ticket, UnifiedAlert  # noqa: F401
from .quota import FormSubmission, Quota, QuotaPeriodCounter  # noqa: F401
