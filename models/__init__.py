from .db import db
from .resource import Resource
from .reservation import Reservation, RescheduleAudit
from .participant import Participant
from .access_token import AccessToken
from .waitlist_entry import WaitlistEntry
from .payment import Payment
from .audit_log import AuditLog
from .rate_limit import RateLimitBucket
