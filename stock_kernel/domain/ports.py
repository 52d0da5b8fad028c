"""
Ports -- interfaces to the collaborators the ledger does not own.

Contract:
    ``Actor`` is supplied by the caller (authentication is outside the
    kernel).  ``AuditSink`` and ``NotificationSink`` receive events after a
    transition has committed; their failures never affect the ledger.
    ``CatalogReader`` answers read-only questions about products, variants
    and locations so documents can be validated at creation time.

Architecture:
    stock_kernel/domain.  ZERO imports from models/services/selectors.
    Default implementations log through the structured logging
    infrastructure (LoggingAuditSink, LoggingNotificationSink) or hold
    in-memory data (StaticCatalog).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable
from uuid import UUID

from stock_kernel.logging_config import get_logger

logger = get_logger("domain.ports")


@dataclass(frozen=True)
class Actor:
    """The authenticated user performing an operation."""

    actor_id: UUID
    name: str


# =============================================================================
# Audit
# =============================================================================


@dataclass(frozen=True)
class AuditRecord:
    actor_id: UUID
    action: str
    ref_id: UUID
    ref_type: str = "MOVEMENT"
    payload: dict[str, Any] = field(default_factory=dict)


@runtime_checkable
class AuditSink(Protocol):
    """Receives one record per committed transition."""

    def record(self, record: AuditRecord) -> None: ...


class LoggingAuditSink:
    """Writes audit records as structured log lines."""

    def record(self, record: AuditRecord) -> None:
        logger.info(
            "audit_recorded",
            extra={
                "audit_actor_id": str(record.actor_id),
                "audit_action": record.action,
                "ref_type": record.ref_type,
                "ref_id": str(record.ref_id),
                "payload": record.payload,
            },
        )


# =============================================================================
# Notification
# =============================================================================


@dataclass(frozen=True)
class MovementNotification:
    """Sent after SUBMIT ("movement_pending") and POST ("movement_posted")."""

    kind: str
    movement_id: UUID
    doc_number: str
    movement_type: str
    actor_name: str
    item_count: int


@runtime_checkable
class NotificationSink(Protocol):

    def notify(self, notification: MovementNotification) -> None: ...


class LoggingNotificationSink:
    """Writes notifications as structured log lines."""

    def notify(self, notification: MovementNotification) -> None:
        logger.info(
            "movement_notification",
            extra={
                "kind": notification.kind,
                "notified_movement_id": str(notification.movement_id),
                "notified_doc_number": notification.doc_number,
                "movement_type": notification.movement_type,
                "actor_name": notification.actor_name,
                "item_count": notification.item_count,
            },
        )


# =============================================================================
# Catalog
# =============================================================================


@runtime_checkable
class CatalogReader(Protocol):
    """Read-only view of the product/location catalog."""

    def product_exists(self, product_id: UUID) -> bool: ...

    def variant_belongs_to(self, variant_id: UUID, product_id: UUID) -> bool: ...

    def location_exists(self, location_id: UUID) -> bool: ...

    def product_label(self, product_id: UUID, variant_id: UUID | None = None) -> str: ...


class StaticCatalog:
    """
    In-memory CatalogReader.

    Products map to a display label; variants map to their owning product.
    """

    def __init__(
        self,
        products: dict[UUID, str] | None = None,
        variants: dict[UUID, UUID] | None = None,
        locations: set[UUID] | None = None,
        variant_labels: dict[UUID, str] | None = None,
    ):
        self._products = dict(products or {})
        self._variants = dict(variants or {})
        self._locations = set(locations or ())
        self._variant_labels = dict(variant_labels or {})

    def add_product(self, product_id: UUID, label: str) -> None:
        self._products[product_id] = label

    def add_variant(self, variant_id: UUID, product_id: UUID, label: str | None = None) -> None:
        self._variants[variant_id] = product_id
        if label:
            self._variant_labels[variant_id] = label

    def add_location(self, location_id: UUID) -> None:
        self._locations.add(location_id)

    def product_exists(self, product_id: UUID) -> bool:
        return product_id in self._products

    def variant_belongs_to(self, variant_id: UUID, product_id: UUID) -> bool:
        return self._variants.get(variant_id) == product_id

    def location_exists(self, location_id: UUID) -> bool:
        return location_id in self._locations

    def product_label(self, product_id: UUID, variant_id: UUID | None = None) -> str:
        label = self._products.get(product_id, str(product_id))
        if variant_id is not None:
            variant_label = self._variant_labels.get(variant_id, str(variant_id))
            return f"{label} ({variant_label})"
        return label
