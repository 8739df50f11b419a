import uuid
from datetime import datetime

from sqlalchemy import Boolean, DateTime, String, func
from sqlalchemy.orm import Mapped, mapped_column, relationship

from ondemand.database import Base
from ondemand.models.enums import UserRole
from ondemand.models.types import GUID


class User(Base):
    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(GUID(), primary_key=True, default=uuid.uuid4)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    email: Mapped[str] = mapped_column(String(255), unique=True, index=True, nullable=False)
    password_hash: Mapped[str] = mapped_column(String(255), nullable=False)
    phone: Mapped[str | None] = mapped_column(String(20), nullable=True)
    role: Mapped[UserRole] = mapped_column(String(20), nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, server_default="true")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    # Capability row, present only when role == MECHANIC
    mechanic_profile: Mapped["MechanicProfile | None"] = relationship(
        "MechanicProfile", back_populates="user", uselist=False, lazy="raise"
    )

    @property
    def is_mechanic(self) -> bool:
        return self.role == UserRole.MECHANIC

    @property
    def is_customer(self) -> bool:
        return self.role == UserRole.CUSTOMER
