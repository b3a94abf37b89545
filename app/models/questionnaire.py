"""
Rapport: Scenario questionnaire models (catalog + per-user responses).
"""

import uuid
from datetime import datetime

from sqlalchemy import (
    Boolean,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.database import Base, JSONType, utcnow


class Scenario(Base):
    """Reference table holding the questionnaire scenarios."""

    __tablename__ = "scenarios"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    title: Mapped[str] = mapped_column(String, nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category: Mapped[str] = mapped_column(String, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False)
    is_active: Mapped[bool] = mapped_column(
        Boolean, default=True, server_default="true", nullable=False
    )

    options: Mapped[list["ScenarioOption"]] = relationship(
        "ScenarioOption",
        back_populates="scenario",
        order_by="ScenarioOption.display_order",
        cascade="all, delete-orphan",
    )

    def __repr__(self) -> str:
        return f"<Scenario #{self.id} category={self.category!r}>"


class ScenarioOption(Base):
    __tablename__ = "scenario_options"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scenario_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("scenarios.id", ondelete="CASCADE"), nullable=False
    )
    option_code: Mapped[str] = mapped_column(String, nullable=False)
    option_text: Mapped[str] = mapped_column(Text, nullable=False)
    display_order: Mapped[int] = mapped_column(Integer, nullable=False)
    personality_vector: Mapped[dict | None] = mapped_column(
        JSONType, nullable=True, comment="trait name -> weight"
    )

    scenario: Mapped["Scenario"] = relationship("Scenario", back_populates="options")

    def __repr__(self) -> str:
        return f"<ScenarioOption {self.scenario_id}/{self.option_code}>"


class ScenarioResponse(Base):
    __tablename__ = "user_scenario_responses"
    __table_args__ = (
        UniqueConstraint("user_id", "scenario_id", name="uq_user_scenario"),
    )

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid, primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey("users.id", ondelete="CASCADE"), nullable=False, index=True
    )
    scenario_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("scenarios.id"), nullable=False
    )
    selected_option_id: Mapped[int] = mapped_column(
        Integer, ForeignKey("scenario_options.id"), nullable=False
    )
    response_time_seconds: Mapped[int | None] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, server_default=func.now(), nullable=False
    )

    # ── Relationships ──────────────────────────────────────────────
    user: Mapped["User"] = relationship("User", back_populates="scenario_responses")
    selected_option: Mapped["ScenarioOption"] = relationship("ScenarioOption")

    def __repr__(self) -> str:
        return (
            f"<ScenarioResponse user={self.user_id} "
            f"scenario={self.scenario_id} option={self.selected_option_id}>"
        )
