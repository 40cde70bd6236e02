import enum
from datetime import datetime

from sqlalchemy import String
from sqlalchemy.orm import Mapped, mapped_column

from models.base import Base, TimestampMixin


class EmployeeStatus(str, enum.Enum):
    active = "active"
    resigned = "resigned"


class Employee(TimestampMixin, Base):
    __tablename__ = "employees"

    id: Mapped[int] = mapped_column(primary_key=True)
    employee_code: Mapped[str] = mapped_column(String(32), unique=True)  # device PIN
    name: Mapped[str] = mapped_column(String(100))
    privilege: Mapped[int] = mapped_column(default=0)  # 0 = user, 14 = admin
    password: Mapped[str | None] = mapped_column(String(32), default=None)
    card_number: Mapped[str | None] = mapped_column(String(32), default=None)

    # Lookup tables live outside this service; plain ids only.
    department_id: Mapped[int | None] = mapped_column(default=None)
    area_id: Mapped[int | None] = mapped_column(default=None)
    designation: Mapped[str | None] = mapped_column(String(100), default=None)

    status: Mapped[EmployeeStatus] = mapped_column(default=EmployeeStatus.active)
    resigned_at: Mapped[datetime | None] = mapped_column(default=None)
    resignation_reason: Mapped[str | None] = mapped_column(String(500), default=None)

    def __repr__(self) -> str:
        return f"<Employee {self.employee_code} {self.name}>"
