"""ProjectionBuilderState model - checkpoint per projection builder."""

from sqlalchemy import BigInteger, String
from sqlalchemy.orm import Mapped, mapped_column

from src.database.base import Base, TimestampMixin


class ProjectionBuilderState(TimestampMixin, Base):
    __tablename__ = "projection_builder_state"

    builder_name: Mapped[str] = mapped_column(String(255), primary_key=True)
    position: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0, server_default="0")

    def __repr__(self) -> str:
        return f"<ProjectionBuilderState builder={self.builder_name} position={self.position}>"
