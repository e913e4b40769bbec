from models.db import db
from utils.timeutil import utcnow

RESOURCE_KINDS = ("space", "equipment", "person")


class Resource(db.Model):
    __tablename__ = "resources"

    id = db.Column(db.Integer, primary_key=True)
    organization_id = db.Column(db.String(64), nullable=False, index=True)

    title = db.Column(db.String(160), nullable=False)
    kind = db.Column(db.String(20), nullable=False, default="space")  # space, equipment, person
    description = db.Column(db.Text, nullable=True)
    location = db.Column(db.String(255), nullable=True)

    capacity = db.Column(db.Integer, nullable=False, default=1)
    is_bookable = db.Column(db.Boolean, default=True, nullable=False)
    is_active = db.Column(db.Boolean, default=True, nullable=False)
    auto_approve = db.Column(db.Boolean, default=False, nullable=False)
    allow_arbitrary_duration = db.Column(db.Boolean, default=False, nullable=False)

    price = db.Column(db.Integer, nullable=False, default=0)  # smallest currency unit
    currency = db.Column(db.String(10), nullable=False, default="USD")

    # JSON rules document, parsed by services.rules.AvailabilityRules
    availability_rules = db.Column(db.JSON, nullable=False, default=dict)

    # Bumped as the first write of every booking transaction on this resource
    lock_version = db.Column(db.Integer, nullable=False, default=0)

    created_by = db.Column(db.String(128), nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=utcnow, onupdate=utcnow, nullable=False)

    __table_args__ = (
        db.CheckConstraint("capacity >= 1", name="ck_resources_capacity_positive"),
    )

    def rules(self):
        from services.rules import AvailabilityRules
        return AvailabilityRules.from_document(
            self.availability_rules or {},
            default_exclusive_hosts=(self.kind == "person"),
        )

    @property
    def requires_payment(self) -> bool:
        return (self.price or 0) > 0
