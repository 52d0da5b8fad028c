"""
SequenceService -- human-readable document numbers via atomic counter rows.

Responsibility:
    Allocates document numbers such as ``MOV2503-000042`` from the
    ``doc_sequences`` table.  The increment and the read happen in one
    statement (``UPDATE ... RETURNING``), so two concurrent callers can
    never observe the same counter value.

Architecture position:
    Kernel > Services -- imperative shell infrastructure.
    Called by MovementService (creation), ReversalService, ReturnService
    and CountAdjustmentService.

Invariants enforced:
    - Uniqueness: the row lock taken by the UPDATE serializes allocations
      for one doc_type.  The aggregate-max-plus-one anti-pattern is never
      used.
    - Transactional: the increment is only visible after the caller's
      transaction commits.  Rollback returns the number.

Failure modes:
    - SequenceNotConfiguredError: no row for the doc_type.  This is a
      configuration error and is never retried.
    - IntegrityError during initialize_sequences: concurrent seeding race
      (handled via savepoint rollback).
"""

from collections.abc import Iterable
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError

from stock_kernel.exceptions import SequenceNotConfiguredError
from stock_kernel.logging_config import get_logger
from stock_kernel.models.sequence import DocSequence
from stock_kernel.services.base import BaseService

logger = get_logger("services.sequence")


class SequenceDefinitionLike(Protocol):
    doc_type: str
    prefix: str
    pad_length: int


def format_doc_number(prefix: str, year: int, month: int, counter: int, pad_length: int) -> str:
    """``{prefix}{YY}{MM}-{counter zero-padded to pad_length}``."""
    return f"{prefix}{year % 100:02d}{month:02d}-{str(counter).zfill(pad_length)}"


class SequenceService(BaseService):
    """
    Service for generating document numbers.

    Contract:
        ``next_number(doc_type)`` returns a number that no other caller has
        received or will receive for that doc_type.

    Guarantees:
        - Gap-free on the commit path; a number is lost only when the
          caller's transaction rolls back after allocating it.
        - YY/MM come from the injected clock.

    Non-goals:
        - Does NOT create counter rows on demand.  Seeding is explicit via
          ``initialize_sequences`` so a typo in a doc_type fails loudly.

    Usage:
        doc_number = sequence_service.next_number("MOVEMENT")
    """

    MOVEMENT = "MOVEMENT"

    def next_number(self, doc_type: str) -> str:
        """
        Allocate the next document number for ``doc_type``.

        Preconditions:
            - The caller is within an active database transaction.

        Postconditions:
            - The counter row is locked until the transaction completes.

        Raises:
            SequenceNotConfiguredError: No doc_sequences row for doc_type.
        """
        row = self.session.execute(
            update(DocSequence)
            .where(DocSequence.doc_type == doc_type)
            .values(current_no=DocSequence.current_no + 1)
            .returning(DocSequence.current_no, DocSequence.prefix, DocSequence.pad_length)
            .execution_options(synchronize_session=False)
        ).one_or_none()

        if row is None:
            logger.error("sequence_not_configured", extra={"doc_type": doc_type})
            raise SequenceNotConfiguredError(doc_type)

        current_no, prefix, pad_length = row
        now = self.clock.now()
        doc_number = format_doc_number(prefix, now.year, now.month, current_no, pad_length)
        logger.debug(
            "sequence_allocated",
            extra={"doc_type": doc_type, "value": current_no, "allocated": doc_number},
        )
        return doc_number

    def current_number(self, doc_type: str) -> int | None:
        """Current counter value without incrementing; None if not configured."""
        return self.session.execute(
            select(DocSequence.current_no).where(DocSequence.doc_type == doc_type)
        ).scalar_one_or_none()

    def initialize_sequences(self, definitions: Iterable[SequenceDefinitionLike]) -> int:
        """
        Seed counter rows for the given definitions.

        Existing rows are left untouched (their counters keep running).

        Returns:
            Number of rows created.
        """
        created = 0
        for definition in definitions:
            if self.current_number(definition.doc_type) is not None:
                continue

            savepoint = self.session.begin_nested()
            try:
                self.session.add(
                    DocSequence(
                        doc_type=definition.doc_type,
                        prefix=definition.prefix,
                        pad_length=definition.pad_length,
                        current_no=0,
                    )
                )
                self.session.flush()
                savepoint.commit()
                created += 1
            except IntegrityError:
                # Seeded concurrently by another transaction.
                savepoint.rollback()
                logger.debug(
                    "sequence_seed_race",
                    extra={"doc_type": definition.doc_type},
                )

        if created:
            logger.info("sequences_initialized", extra={"created_count": created})
        return created
