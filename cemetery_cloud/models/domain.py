"""Domain models - cemeteries, plots and the deceased records buried in them."""
from datetime import datetime
from sqlalchemy import Column, String, Integer, Date, DateTime, ForeignKey, JSON
from sqlalchemy.orm import relationship
from cemetery_cloud.database import Base
from cemetery_cloud.models.enums import PlotStatus, BurialType


class Cemetery(Base):
    """A cemetery. Read-only through the API; created from the CLI."""
    __tablename__ = "cemeteries"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True)

    plots = relationship("Plot", back_populates="cemetery")


class Plot(Base):
    """
    A plot inside a cemetery.

    Invariants:
    - plot_code is unique among the non-deleted plots of a cemetery
    - at most PLOTS_PER_CEMETERY_LIMIT non-deleted plots per cemetery
      (enforced in the orchestrator, best effort)
    - never physically removed: deletion sets deleted_at
    """
    __tablename__ = "plots"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    cemetery_id = Column(Integer, ForeignKey("cemeteries.id"), nullable=False, index=True)
    plot_code = Column(String, nullable=False)
    status = Column(String, nullable=False, default=PlotStatus.AVAILABLE.value)
    owner_name = Column(String, nullable=True)
    gender = Column(String, nullable=True)
    payment_date = Column(Date, nullable=True)
    row_num = Column(Integer, nullable=True)
    col_num = Column(Integer, nullable=True)
    coords = Column(JSON, nullable=True)  # Opaque to the backend, drawn by the map client

    deleted_at = Column(DateTime, nullable=True, index=True)
    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    cemetery = relationship("Cemetery", back_populates="plots")
    deceased_records = relationship("DeceasedRecord", back_populates="plot")


class DeceasedRecord(Base):
    """
    A person buried in a plot. A plot keeps its whole burial history,
    so many records may point at the same plot.
    """
    __tablename__ = "deceased_records"

    id = Column(Integer, primary_key=True, index=True, autoincrement=True)
    plot_id = Column(Integer, ForeignKey("plots.id"), nullable=False, index=True)

    deceased_full_name = Column(String, nullable=False)
    id_number = Column(String, nullable=True)
    date_of_birth = Column(Date, nullable=True)
    date_of_death = Column(Date, nullable=True)
    burial_type = Column(String, nullable=False, default=BurialType.BURIAL.value)
    burial_date = Column(Date, nullable=True)

    next_of_kin_name = Column(String, nullable=True)
    next_of_kin_relationship = Column(String, nullable=True)
    next_of_kin_phone = Column(String, nullable=True)
    next_of_kin_email = Column(String, nullable=True)
    next_of_kin_address = Column(String, nullable=True)

    undertaker_name = Column(String, nullable=True)
    undertaker_phone = Column(String, nullable=True)

    cause_of_death = Column(String, nullable=True)
    notes = Column(String, nullable=True)

    created_at = Column(DateTime, nullable=False, default=datetime.utcnow)
    updated_at = Column(DateTime, nullable=False, default=datetime.utcnow, onupdate=datetime.utcnow)

    plot = relationship("Plot", back_populates="deceased_records")


# Fields a deceased-record update may touch, in storage order
DECEASED_FIELDS = (
    "deceased_full_name",
    "id_number",
    "date_of_birth",
    "date_of_death",
    "burial_type",
    "burial_date",
    "next_of_kin_name",
    "next_of_kin_relationship",
    "next_of_kin_phone",
    "next_of_kin_email",
    "next_of_kin_address",
    "undertaker_name",
    "undertaker_phone",
    "cause_of_death",
    "notes",
)

# Fields a plot update may touch; plot_code and cemetery_id are fixed at creation
PLOT_UPDATABLE_FIELDS = (
    "owner_name",
    "gender",
    "status",
    "payment_date",
    "row_num",
    "col_num",
    "coords",
)
