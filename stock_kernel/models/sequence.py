"""
Module: stock_kernel.models.sequence
Responsibility: Counter rows backing human-readable document numbers.
Architecture position: Kernel > Models.  May import from db/ only.

Invariants enforced:
    - One row per doc_type (uq_doc_sequence_type).
    - current_no only grows; it is changed exclusively by
      SequenceService.next_number's atomic UPDATE ... RETURNING.
"""

from sqlalchemy import BigInteger, Integer, String, UniqueConstraint
from sqlalchemy.orm import Mapped, mapped_column

from stock_kernel.db.base import Base


class DocSequence(Base):
    """Counter for one document type, e.g. MOVEMENT -> MOV2503-000001."""

    __tablename__ = "doc_sequences"

    __table_args__ = (
        UniqueConstraint("doc_type", name="uq_doc_sequence_type"),
    )

    doc_type: Mapped[str] = mapped_column(String(50), nullable=False)

    prefix: Mapped[str] = mapped_column(String(20), nullable=False)

    pad_length: Mapped[int] = mapped_column(Integer, nullable=False, default=6)

    current_no: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)

    def __repr__(self) -> str:
        return f"<DocSequence {self.doc_type} prefix={self.prefix} current={self.current_no}>"
