"""
Module: stock_services.movement_actions
Responsibility:
    Operation boundary for the stock ledger.  Every public method opens
    its own session, runs one kernel operation, commits, and returns an
    ``ActionResult`` instead of raising.  After a successful commit it
    hands audit records and notifications to the configured sinks.

Architecture:
    stock_services layer -- the only layer that commits.  Kernel services
    flush and use savepoints; they never commit or roll back the outer
    transaction.

    Dependency direction (strict):
        movement_actions.py  -->  stock_kernel.services   (write side)
        movement_actions.py  -->  stock_kernel.selectors  (read side)
        movement_actions.py  -->  stock_config            (from_config only)

Invariants:
    - One transaction per public method: commit on success, rollback on
      any failure.  Nothing is partially committed.
    - A missing actor fails every mutating method with UNAUTHORIZED before
      a session is opened.
    - Audit and notification sinks run only after commit.  Their failures
      are logged and never change the result.

Failure modes:
    - StockKernelError subclasses  -> ActionResult(success=False, code=exc.code),
      logged at WARNING.
    - SQLAlchemy DBAPIError (incl. OperationalError)  -> InfrastructureError
      result (code INFRASTRUCTURE_ERROR), logged at ERROR with exc_info.
    - Any other exception propagates after rollback.

Audit relevance:
    Actions: CREATE, UPDATE, SUBMIT, APPROVE, REJECT, POST, CANCEL,
    CREATE_REVERSAL, CREATE_RETURN, BATCH_<ACTION> (one record per
    successful item) and STOCK_COUNT.
"""

from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any, Generic, TypeVar
from uuid import UUID, uuid4

from sqlalchemy.exc import DBAPIError
from sqlalchemy.orm import Session, sessionmaker

from stock_kernel.db.engine import build_engine, create_tables
from stock_kernel.domain.clock import Clock, SystemClock
from stock_kernel.domain.dtos import (
    BatchResult,
    CountedQuantity,
    IssueWithRemaining,
    MovementFilter,
    MovementInput,
    MovementUpdate,
    MovementView,
    Page,
    PostingResult,
    ProductMovementEntry,
    ReturnableLine,
    ReturnLineRequest,
    StockBalanceView,
)
from stock_kernel.domain.movement import DocumentLink
from stock_kernel.domain.ports import (
    Actor,
    AuditRecord,
    AuditSink,
    CatalogReader,
    LoggingAuditSink,
    LoggingNotificationSink,
    MovementNotification,
    NotificationSink,
)
from stock_kernel.exceptions import (
    AuthorizationError,
    InfrastructureError,
    MovementNotFoundError,
    StockKernelError,
)
from stock_kernel.logging_config import LogContext, configure_logging, get_logger
from stock_kernel.models.movement import MovementDocument
from stock_kernel.selectors.balance_selector import BalanceSelector
from stock_kernel.selectors.movement_selector import MovementSelector
from stock_kernel.selectors.return_selector import ReturnSelector
from stock_kernel.services.batch_runner import DEFAULT_MAX_BATCH_SIZE, BatchAction, BatchRunner
from stock_kernel.services.count_adjustment import CountAdjustmentService
from stock_kernel.services.movement_service import MovementService
from stock_kernel.services.posting_engine import DEFAULT_POSTING_TIMEOUT_SECONDS, PostingEngine
from stock_kernel.services.return_service import ReturnService
from stock_kernel.services.reversal_service import ReversalService
from stock_kernel.services.sequence_service import SequenceDefinitionLike, SequenceService

if TYPE_CHECKING:
    from stock_config.schema import StockLedgerConfig

logger = get_logger("services.movement_actions")

T = TypeVar("T")

PENDING_NOTIFICATION = "movement_pending"
POSTED_NOTIFICATION = "movement_posted"


@dataclass(frozen=True)
class ActionResult(Generic[T]):
    """Outcome of one boundary operation."""

    success: bool
    data: T | None = None
    error: str | None = None
    code: str | None = None

    @classmethod
    def ok(cls, data: T | None = None) -> ActionResult[T]:
        return cls(success=True, data=data)

    @classmethod
    def fail(cls, exc: StockKernelError) -> ActionResult[T]:
        return cls(success=False, error=str(exc), code=exc.code)


@dataclass
class _Outcome(Generic[T]):
    """What a unit of work produced, plus events to emit after commit."""

    data: T
    audits: list[AuditRecord] = field(default_factory=list)
    notifications: list[MovementNotification] = field(default_factory=list)


@dataclass
class _Services:
    """Kernel services sharing one session."""

    session: Session
    movements: MovementService
    posting: PostingEngine
    reversals: ReversalService
    returns: ReturnService
    batches: BatchRunner
    counts: CountAdjustmentService
    sequences: SequenceService


class MovementActions:
    """
    Transactional entry points for movement documents.

    Contract:
        Callers supply a session factory (or a configuration via
        ``from_config``) and an ``Actor`` on every mutating call.  Results
        carry frozen views, never ORM objects.

    Guarantees:
        - Each public method commits exactly once on success.
        - Expected failures come back as ``ActionResult(success=False)``
          with the kernel error code.

    Non-goals:
        - Does NOT check roles or permissions beyond requiring an actor.
        - Does NOT retry; ``InfrastructureError`` results are retryable
          by the caller.
    """

    def __init__(
        self,
        session_factory: sessionmaker[Session],
        clock: Clock | None = None,
        catalog: CatalogReader | None = None,
        audit_sink: AuditSink | None = None,
        notification_sink: NotificationSink | None = None,
        max_batch_size: int = DEFAULT_MAX_BATCH_SIZE,
        posting_timeout_seconds: int = DEFAULT_POSTING_TIMEOUT_SECONDS,
        doc_type: str = SequenceService.MOVEMENT,
        sequence_definitions: Sequence[SequenceDefinitionLike] = (),
    ):
        self._session_factory = session_factory
        self._clock = clock or SystemClock()
        self._catalog = catalog
        self._audit = audit_sink or LoggingAuditSink()
        self._notifications = notification_sink or LoggingNotificationSink()
        self._max_batch_size = max_batch_size
        self._posting_timeout_seconds = posting_timeout_seconds
        self._doc_type = doc_type
        self._sequence_definitions = tuple(sequence_definitions)

    @classmethod
    def from_config(
        cls,
        config: StockLedgerConfig,
        clock: Clock | None = None,
        catalog: CatalogReader | None = None,
        audit_sink: AuditSink | None = None,
        notification_sink: NotificationSink | None = None,
    ) -> MovementActions:
        """Build an engine, session factory and actions from configuration."""
        configure_logging(level=config.logging.level)
        engine = build_engine(
            config.database.url,
            echo=config.database.echo,
            pool_size=config.database.pool_size,
            max_overflow=config.database.max_overflow,
            pool_timeout=config.database.pool_timeout,
        )
        return cls(
            sessionmaker(bind=engine, expire_on_commit=False),
            clock=clock,
            catalog=catalog,
            audit_sink=audit_sink,
            notification_sink=notification_sink,
            max_batch_size=config.ledger.max_batch_size,
            posting_timeout_seconds=config.ledger.posting_timeout_seconds,
            doc_type=config.ledger.movement_doc_type,
            sequence_definitions=config.sequences,
        )

    # =========================================================================
    # Setup
    # =========================================================================

    def initialize_storage(self) -> ActionResult[int]:
        """Create missing tables and seed configured sequences.

        Returns the number of sequence rows created.
        """
        with self._session_factory() as session:
            create_tables(session.get_bind())

        def work(services: _Services) -> _Outcome[int]:
            return _Outcome(services.sequences.initialize_sequences(self._sequence_definitions))

        return self._execute("initialize_storage", None, work, requires_actor=False)

    # =========================================================================
    # Document lifecycle
    # =========================================================================

    def create_movement(self, actor: Actor | None, data: MovementInput) -> ActionResult[MovementView]:
        def work(services: _Services) -> _Outcome[MovementView]:
            doc = services.movements.create(data, actor.actor_id)
            return self._document_outcome(doc, actor, "CREATE")

        return self._execute("create_movement", actor, work)

    def update_movement(
        self,
        actor: Actor | None,
        movement_id: UUID,
        data: MovementUpdate,
    ) -> ActionResult[MovementView]:
        def work(services: _Services) -> _Outcome[MovementView]:
            doc = services.movements.update(movement_id, data, actor.actor_id)
            return self._document_outcome(doc, actor, "UPDATE")

        return self._execute("update_movement", actor, work)

    def submit_movement(self, actor: Actor | None, movement_id: UUID) -> ActionResult[MovementView]:
        def work(services: _Services) -> _Outcome[MovementView]:
            doc = services.movements.submit(movement_id, actor.actor_id)
            outcome = self._document_outcome(doc, actor, "SUBMIT")
            outcome.notifications.append(self._notification(PENDING_NOTIFICATION, doc, actor))
            return outcome

        return self._execute("submit_movement", actor, work)

    def approve_movement(self, actor: Actor | None, movement_id: UUID) -> ActionResult[MovementView]:
        def work(services: _Services) -> _Outcome[MovementView]:
            doc = services.movements.approve(movement_id, actor.actor_id)
            return self._document_outcome(doc, actor, "APPROVE")

        return self._execute("approve_movement", actor, work)

    def reject_movement(
        self,
        actor: Actor | None,
        movement_id: UUID,
        reason: str | None = None,
    ) -> ActionResult[MovementView]:
        def work(services: _Services) -> _Outcome[MovementView]:
            doc = services.movements.reject(movement_id, actor.actor_id, reason)
            return self._document_outcome(doc, actor, "REJECT", reason=reason)

        return self._execute("reject_movement", actor, work)

    def cancel_movement(
        self,
        actor: Actor | None,
        movement_id: UUID,
        reason: str | None = None,
    ) -> ActionResult[MovementView]:
        def work(services: _Services) -> _Outcome[MovementView]:
            doc = services.movements.cancel(movement_id, actor.actor_id, reason)
            return self._document_outcome(doc, actor, "CANCEL", reason=reason)

        return self._execute("cancel_movement", actor, work)

    def post_movement(self, actor: Actor | None, movement_id: UUID) -> ActionResult[PostingResult]:
        def work(services: _Services) -> _Outcome[PostingResult]:
            result = services.posting.post(movement_id, actor.actor_id)
            doc = services.movements.get(movement_id)
            return _Outcome(
                result,
                audits=[self._audit_record(doc, actor, "POST")],
                notifications=[self._notification(POSTED_NOTIFICATION, doc, actor)],
            )

        return self._execute("post_movement", actor, work)

    # =========================================================================
    # Derived documents
    # =========================================================================

    def create_reversal(self, actor: Actor | None, movement_id: UUID) -> ActionResult[MovementView]:
        def work(services: _Services) -> _Outcome[MovementView]:
            doc = services.reversals.create_reversal(movement_id, actor.actor_id)
            return self._document_outcome(
                doc, actor, "CREATE_REVERSAL", original_id=str(movement_id)
            )

        return self._execute("create_reversal", actor, work)

    def create_return(
        self,
        actor: Actor | None,
        issue_id: UUID,
        requests: Sequence[ReturnLineRequest],
        note: str | None = None,
    ) -> ActionResult[MovementView]:
        def work(services: _Services) -> _Outcome[MovementView]:
            doc = services.returns.create_return(issue_id, requests, actor.actor_id, note=note)
            return self._document_outcome(doc, actor, "CREATE_RETURN", issue_id=str(issue_id))

        return self._execute("create_return", actor, work)

    def apply_stock_count(
        self,
        actor: Actor | None,
        counts: Sequence[CountedQuantity],
        link: DocumentLink | None = None,
        note: str | None = None,
    ) -> ActionResult[PostingResult]:
        """
        Build, submit, approve and post the variance document in one
        transaction.  ``data`` is None when every count matched.
        """

        def work(services: _Services) -> _Outcome[PostingResult | None]:
            doc = services.counts.build_adjustment(counts, actor.actor_id, link=link, note=note)
            if doc is None:
                return _Outcome(None)
            services.movements.submit(doc.id, actor.actor_id)
            services.movements.approve(doc.id, actor.actor_id)
            result = services.posting.post(doc.id, actor.actor_id)
            return _Outcome(
                result,
                audits=[
                    self._audit_record(doc, actor, "STOCK_COUNT", counted_keys=len(counts))
                ],
                notifications=[self._notification(POSTED_NOTIFICATION, doc, actor)],
            )

        return self._execute("apply_stock_count", actor, work)

    # =========================================================================
    # Batch
    # =========================================================================

    def run_batch(
        self,
        actor: Actor | None,
        movement_ids: Sequence[UUID],
        action: BatchAction,
        reason: str | None = None,
    ) -> ActionResult[BatchResult]:
        """
        Apply ``action`` to each id; failures are isolated per id and the
        successful ones commit together.
        """

        def work(services: _Services) -> _Outcome[BatchResult]:
            result = services.batches.run(movement_ids, action, actor.actor_id, reason)
            outcome = _Outcome(result)
            for item in result.results:
                if not item.success:
                    continue
                doc = services.movements.get(item.id)
                outcome.audits.append(
                    self._audit_record(doc, actor, f"BATCH_{action.value}", reason=reason)
                )
                if action is BatchAction.POST:
                    outcome.notifications.append(
                        self._notification(POSTED_NOTIFICATION, doc, actor)
                    )
            return outcome

        return self._execute("run_batch", actor, work)

    # =========================================================================
    # Queries
    # =========================================================================

    def get_movement(self, movement_id: UUID) -> ActionResult[MovementView]:
        def work(services: _Services) -> _Outcome[MovementView]:
            view = MovementSelector(services.session).get(movement_id)
            if view is None:
                raise MovementNotFoundError(str(movement_id))
            return _Outcome(view)

        return self._execute("get_movement", None, work, requires_actor=False)

    def list_movements(
        self,
        filters: MovementFilter | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ActionResult[Page[MovementView]]:
        def work(services: _Services) -> _Outcome[Page[MovementView]]:
            return _Outcome(MovementSelector(services.session).list(filters, page, limit))

        return self._execute("list_movements", None, work, requires_actor=False)

    def linked_movements(self, movement_id: UUID) -> ActionResult[tuple[MovementView, ...]]:
        def work(services: _Services) -> _Outcome[tuple[MovementView, ...]]:
            return _Outcome(MovementSelector(services.session).linked_movements(movement_id))

        return self._execute("linked_movements", None, work, requires_actor=False)

    def product_history(
        self,
        product_id: UUID,
        variant_id: UUID | None = None,
        page: int = 1,
        limit: int = 20,
    ) -> ActionResult[Page[ProductMovementEntry]]:
        def work(services: _Services) -> _Outcome[Page[ProductMovementEntry]]:
            return _Outcome(
                MovementSelector(services.session).posted_lines_for_product(
                    product_id, variant_id, page, limit
                )
            )

        return self._execute("product_history", None, work, requires_actor=False)

    def product_balances(
        self,
        product_id: UUID,
        variant_id: UUID | None = None,
    ) -> ActionResult[tuple[StockBalanceView, ...]]:
        def work(services: _Services) -> _Outcome[tuple[StockBalanceView, ...]]:
            return _Outcome(
                BalanceSelector(services.session).balances_for_product(product_id, variant_id)
            )

        return self._execute("product_balances", None, work, requires_actor=False)

    def returnable_lines(self, issue_id: UUID) -> ActionResult[tuple[ReturnableLine, ...]]:
        def work(services: _Services) -> _Outcome[tuple[ReturnableLine, ...]]:
            return _Outcome(ReturnSelector(services.session).returnable_lines(issue_id))

        return self._execute("returnable_lines", None, work, requires_actor=False)

    def issues_with_remaining(self) -> ActionResult[tuple[IssueWithRemaining, ...]]:
        def work(services: _Services) -> _Outcome[tuple[IssueWithRemaining, ...]]:
            return _Outcome(ReturnSelector(services.session).issues_with_remaining())

        return self._execute("issues_with_remaining", None, work, requires_actor=False)

    # =========================================================================
    # Internals
    # =========================================================================

    def _build_services(self, session: Session) -> _Services:
        sequences = SequenceService(session, self._clock)
        movements = MovementService(
            session,
            self._clock,
            catalog=self._catalog,
            sequence_service=sequences,
            doc_type=self._doc_type,
        )
        # Generated documents copy lines that were validated when the
        # source document was created, so they skip the catalog.
        derived = MovementService(
            session, self._clock, sequence_service=sequences, doc_type=self._doc_type
        )
        posting = PostingEngine(
            session,
            self._clock,
            catalog=self._catalog,
            movement_service=movements,
            timeout_seconds=self._posting_timeout_seconds,
        )
        return _Services(
            session=session,
            movements=movements,
            posting=posting,
            reversals=ReversalService(session, self._clock, movement_service=derived),
            returns=ReturnService(session, self._clock, movement_service=derived),
            batches=BatchRunner(
                session,
                self._clock,
                movement_service=movements,
                posting_engine=posting,
                max_batch_size=self._max_batch_size,
            ),
            counts=CountAdjustmentService(session, self._clock, movement_service=movements),
            sequences=sequences,
        )

    def _execute(
        self,
        operation: str,
        actor: Actor | None,
        work: Callable[[_Services], _Outcome[Any]],
        requires_actor: bool = True,
    ) -> ActionResult[Any]:
        if requires_actor and actor is None:
            exc = AuthorizationError(operation)
            logger.warning(
                "action_failed",
                extra={"operation": operation, "error_code": exc.code, "error": str(exc)},
            )
            return ActionResult.fail(exc)

        actor_id = str(actor.actor_id) if actor is not None else None
        with LogContext.bind(correlation_id=str(uuid4()), actor_id=actor_id):
            with self._session_factory() as session:
                try:
                    outcome = work(self._build_services(session))
                    session.commit()
                except StockKernelError as exc:
                    session.rollback()
                    logger.warning(
                        "action_failed",
                        extra={"operation": operation, "error_code": exc.code, "error": str(exc)},
                    )
                    return ActionResult.fail(exc)
                except DBAPIError as exc:
                    session.rollback()
                    error = InfrastructureError(operation, str(exc.orig or exc))
                    logger.error(
                        "action_infrastructure_failure",
                        exc_info=True,
                        extra={"operation": operation, "error_code": error.code},
                    )
                    return ActionResult.fail(error)
                except Exception:
                    session.rollback()
                    raise

            logger.debug("action_completed", extra={"operation": operation})
            self._emit(outcome)
        return ActionResult.ok(outcome.data)

    def _emit(self, outcome: _Outcome[Any]) -> None:
        for record in outcome.audits:
            try:
                self._audit.record(record)
            except Exception:
                logger.warning(
                    "audit_sink_failed",
                    exc_info=True,
                    extra={"audit_action": record.action, "ref_id": str(record.ref_id)},
                )
        for notification in outcome.notifications:
            try:
                self._notifications.notify(notification)
            except Exception:
                logger.warning(
                    "notification_sink_failed",
                    exc_info=True,
                    extra={
                        "kind": notification.kind,
                        "notified_movement_id": str(notification.movement_id),
                    },
                )

    def _document_outcome(
        self,
        doc: MovementDocument,
        actor: Actor,
        action: str,
        **payload: Any,
    ) -> _Outcome[MovementView]:
        return _Outcome(
            MovementView.from_model(doc),
            audits=[self._audit_record(doc, actor, action, **payload)],
        )

    @staticmethod
    def _audit_record(
        doc: MovementDocument,
        actor: Actor,
        action: str,
        **payload: Any,
    ) -> AuditRecord:
        return AuditRecord(
            actor_id=actor.actor_id,
            action=action,
            ref_id=doc.id,
            payload={
                "doc_number": doc.doc_number,
                "movement_type": doc.type.value,
                "status": doc.status.value,
                **{k: v for k, v in payload.items() if v is not None},
            },
        )

    @staticmethod
    def _notification(kind: str, doc: MovementDocument, actor: Actor) -> MovementNotification:
        return MovementNotification(
            kind=kind,
            movement_id=doc.id,
            doc_number=doc.doc_number,
            movement_type=doc.type.value,
            actor_name=actor.name,
            item_count=len(doc.lines),
        )
