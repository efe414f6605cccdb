"""Key/value system settings ORM model."""

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from src.models import Base, BaseModel


class SystemSetting(Base, BaseModel):
    """Persisted business configuration (rates, due days, payment channels)."""

    __tablename__ = "system_settings"

    setting_key: Mapped[str] = mapped_column(String(100), unique=True, nullable=False)
    setting_value: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    description: Mapped[str | None] = mapped_column(String(255), nullable=True)
    category: Mapped[str] = mapped_column(String(50), nullable=False, default="general")

    def __repr__(self) -> str:
        return f"<SystemSetting(key={self.setting_key}, value={self.setting_value})>"


__all__ = ["SystemSetting"]
