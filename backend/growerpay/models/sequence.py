"""NumberSequence: row-locked counters for human-readable numbers.

Keyed by prefix and year (`ADV1-2025`, `FINAL-2025`, `DIST-2025`).
"""

from sqlalchemy import Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from growerpay.database import Base


class NumberSequence(Base):
    __tablename__ = "number_sequences"

    key: Mapped[str] = mapped_column(String(40), primary_key=True)
    last_value: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
