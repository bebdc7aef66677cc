"""SQLAlchemy 2.x ORM models.

Tables
──────
PricePoint   one resolved price per (token, network, timestamp)
"""
from __future__ import annotations

from sqlalchemy import BigInteger, Index, String
from sqlalchemy.orm import Mapped, mapped_column

from app.data.database import Base


class PricePoint(Base):
    """Persisted price resolution.

    WITHOUT ROWID clusters the B-tree on (token, network, timestamp) so a
    token's history reads back as one sequential range scan.  ``price`` is
    stored as the decimal string the resolver produced, so no precision is
    lost to float conversion.  INSERT OR IGNORE on the composite PK makes
    repeated backfills of the same day a no-op.
    """

    __tablename__ = "price_point"
    __table_args__ = (
        Index("idx_price_point_fetched", "network", "fetched_at"),
        {"sqlite_with_rowid": False},
    )

    token:     Mapped[str] = mapped_column(String(42), primary_key=True, nullable=False)
    network:   Mapped[str] = mapped_column(String(16), primary_key=True, nullable=False)
    timestamp: Mapped[int] = mapped_column(BigInteger, primary_key=True, nullable=False)

    price:  Mapped[str] = mapped_column(String(64), nullable=False)
    source: Mapped[str] = mapped_column(String(16), nullable=False)

    fetched_at: Mapped[int] = mapped_column(BigInteger, nullable=False)

    def __repr__(self) -> str:  # pragma: no cover
        return f"<PricePoint {self.token}/{self.network} @ {self.timestamp} = {self.price}>"
