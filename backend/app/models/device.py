import enum
from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class DeviceStatus(str, enum.Enum):
    online = "online"
    offline = "offline"


class DeviceDirection(str, enum.Enum):
    IN = "in"
    OUT = "out"
    BOTH = "both"


class Device(TimestampMixin, Base):
    __tablename__ = "devices"

    id: Mapped[int] = mapped_column(primary_key=True)
    serial: Mapped[str] = mapped_column(String(64), unique=True)
    name: Mapped[str] = mapped_column(String(100))
    status: Mapped[DeviceStatus] = mapped_column(default=DeviceStatus.offline)
    last_activity: Mapped[datetime | None] = mapped_column(default=None)
    # Fallback punch-direction rule; not read by the dispatch core.
    direction: Mapped[DeviceDirection] = mapped_column(default=DeviceDirection.BOTH)
    ip_address: Mapped[str | None] = mapped_column(String(45), default=None)

    def __repr__(self) -> str:
        return f"<Device {self.name} ({self.serial}) {self.status.value}>"
