"""Database models - listing dispatch schema."""
from datetime import datetime
from sqlalchemy import Column, Integer, String, Boolean, DateTime, ForeignKey, Text, Index, BigInteger
from sqlalchemy.orm import declarative_base, relationship

Base = declarative_base()


class Listing(Base):
    """
    Listing mirror owned by the listings subsystem.

    The dispatch module reads it and only ever writes `status`
    (pending -> approved) and the `distributed*` flags.
    """
    __tablename__ = "listings"

    id = Column(String, primary_key=True)
    display_number = Column(BigInteger, nullable=False)
    title = Column(String, nullable=False)
    description = Column(Text, nullable=True)
    price = Column(BigInteger, nullable=True)

    category_id = Column(String, nullable=True)
    category_name = Column(String, nullable=True)
    category_slug = Column(String, nullable=True)
    city_id = Column(String, nullable=True)
    city_name = Column(String, nullable=True)
    region = Column(String, nullable=True)
    street = Column(String, nullable=True)
    neighborhood = Column(String, nullable=True)

    attributes = Column(Text, nullable=True)  # JSON object: rooms, floor, area
    images = Column(Text, nullable=True)  # JSON list: [{url, branded_url, order}]

    status = Column(String, nullable=False, default="PENDING")  # PENDING|APPROVED|REJECTED|...
    distributed = Column(Boolean, nullable=False, default=False)
    distributed_at = Column(DateTime, nullable=True)
    distributed_by = Column(String, nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (
        Index("uq_listings_display_number", "display_number", unique=True),
        Index("idx_listings_city_category", "city_id", "category_id"),
    )

    def __repr__(self):
        return f"<Listing(id={self.id}, display_number={self.display_number}, status={self.status})>"


class DispatchTarget(Base):
    """Distribution target ("group") with scope filters and a daily quota."""
    __tablename__ = "dispatch_targets"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    internal_code = Column(String, nullable=False, unique=True)
    status = Column(String, nullable=False, default="ACTIVE")  # ACTIVE|PAUSED|ARCHIVED
    channel = Column(String, nullable=False, default="group")  # group|channel|broadcast

    # Scope filters (JSON lists, empty = accept all)
    city_scopes = Column(Text, nullable=False, default="[]")
    region_scopes = Column(Text, nullable=False, default="[]")
    category_scopes = Column(Text, nullable=False, default="[]")

    daily_quota = Column(Integer, nullable=False, default=10)
    allow_digest = Column(Boolean, nullable=False, default=True)
    invite_link = Column(String, nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    items = relationship("DispatchItem", back_populates="target")
    digests = relationship("DispatchDigest", back_populates="target")

    __table_args__ = (
        Index("idx_dispatch_targets_status", "status"),
    )

    def __repr__(self):
        return f"<DispatchTarget(id={self.id}, name={self.name}, status={self.status})>"


class TargetSuggestion(Base):
    """Proposed target awaiting review by a super admin."""
    __tablename__ = "target_suggestions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False)
    internal_code = Column(String, nullable=False)
    channel = Column(String, nullable=False, default="group")
    city_scopes = Column(Text, nullable=False, default="[]")
    region_scopes = Column(Text, nullable=False, default="[]")
    category_scopes = Column(Text, nullable=False, default="[]")
    daily_quota = Column(Integer, nullable=False, default=10)
    allow_digest = Column(Boolean, nullable=False, default=True)
    invite_link = Column(String, nullable=True)

    status = Column(String, nullable=False, default="PENDING")  # PENDING|APPROVED|REJECTED
    suggested_by = Column(String, nullable=False)
    suggested_at = Column(DateTime, default=datetime.utcnow)
    reviewed_by = Column(String, nullable=True)
    reviewed_at = Column(DateTime, nullable=True)
    review_notes = Column(Text, nullable=True)
    approved_target_id = Column(Integer, ForeignKey("dispatch_targets.id"), nullable=True)

    __table_args__ = (
        Index("idx_target_suggestions_status", "status", "suggested_at"),
    )


class DispatchDigest(Base):
    """One combined message covering several pending items for a target."""
    __tablename__ = "dispatch_digests"

    id = Column(Integer, primary_key=True, autoincrement=True)
    target_id = Column(Integer, ForeignKey("dispatch_targets.id"), nullable=False)
    title = Column(String, nullable=False)
    item_count = Column(Integer, nullable=False, default=0)
    status = Column(String, nullable=False, default="PENDING")  # PENDING|SENT
    payload_snapshot = Column(Text, nullable=True)

    created_by = Column(String, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    sent_at = Column(DateTime, nullable=True)
    sent_by = Column(String, nullable=True)

    target = relationship("DispatchTarget", back_populates="digests")
    items = relationship("DispatchItem", back_populates="digest")

    __table_args__ = (
        Index("idx_dispatch_digests_target", "target_id", "created_at"),
    )


class DispatchItem(Base):
    """One attempted delivery of a listing's message to one target."""
    __tablename__ = "dispatch_items"

    id = Column(Integer, primary_key=True, autoincrement=True)
    listing_id = Column(String, ForeignKey("listings.id"), nullable=False)
    target_id = Column(Integer, ForeignKey("dispatch_targets.id"), nullable=True)  # NULL = unassigned
    channel = Column(String, nullable=True)

    status = Column(String, nullable=False, default="PENDING")
    priority = Column(Integer, nullable=False, default=0)
    payload_snapshot = Column(Text, nullable=True)
    dedupe_key = Column(String, nullable=False)

    attempt_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text, nullable=True)
    sent_at = Column(DateTime, nullable=True)
    sent_by = Column(String, nullable=True)
    digest_id = Column(Integer, ForeignKey("dispatch_digests.id"), nullable=True)

    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    listing = relationship("Listing")
    target = relationship("DispatchTarget", back_populates="items")
    digest = relationship("DispatchDigest", back_populates="items")

    __table_args__ = (
        Index("uq_dispatch_items_dedupe", "dedupe_key", unique=True),
        Index("idx_dispatch_items_quota", "target_id", "status", "sent_at"),
        Index("idx_dispatch_items_queue", "status", "created_at"),
        Index("idx_dispatch_items_listing", "listing_id"),
    )

    def __repr__(self):
        return f"<DispatchItem(id={self.id}, listing_id={self.listing_id}, target_id={self.target_id}, status={self.status})>"


class DispatchAuditLog(Base):
    """Append-only dispatch action log."""
    __tablename__ = "dispatch_audit_log"

    id = Column(BigInteger().with_variant(Integer, "sqlite"), primary_key=True, autoincrement=True)
    action = Column(String, nullable=False)
    actor_id = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)  # listing|dispatch_item|target|digest|suggestion|operator
    entity_id = Column(String, nullable=False)
    listing_id = Column(String, nullable=True)  # extracted from payload for history lookups
    target_id = Column(String, nullable=True)
    payload = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    __table_args__ = (
        Index("idx_audit_entity", "entity_type", "entity_id"),
        Index("idx_audit_listing", "listing_id"),
        Index("idx_audit_target", "target_id"),
        Index("idx_audit_actor", "actor_id", "created_at"),
        Index("idx_audit_action", "action", "created_at"),
    )

    def __repr__(self):
        return f"<DispatchAuditLog(action={self.action}, actor_id={self.actor_id}, entity={self.entity_type}/{self.entity_id})>"


class Operator(Base):
    """Operator role and capability flags."""
    __tablename__ = "operators"

    actor_id = Column(String, primary_key=True)
    role = Column(String, nullable=False, default="MODERATOR")  # SUPER_ADMIN|ADMIN|MODERATOR|custom

    can_operate = Column(Boolean, nullable=False, default=False)
    can_override = Column(Boolean, nullable=False, default=False)
    can_manage_targets = Column(Boolean, nullable=False, default=False)
    can_change_quota = Column(Boolean, nullable=False, default=False)
    can_review_suggestions = Column(Boolean, nullable=False, default=False)
    can_view_audit = Column(Boolean, nullable=False, default=False)
    can_manage_operators = Column(Boolean, nullable=False, default=False)

    granted_by = Column(String, nullable=True)
    granted_at = Column(DateTime, default=datetime.utcnow)

    def __repr__(self):
        return f"<Operator(actor_id={self.actor_id}, role={self.role})>"


class MetricCounter(Base):
    """Persistent counters (side channel for operational failures)."""
    __tablename__ = "metric_counters"

    key = Column(String, primary_key=True)
    value = Column(BigInteger, nullable=False, default=0)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)
