from datetime import datetime
from sqlalchemy import Enum as SAEnum
from ..extensions import db
from sqlalchemy.types import JSON


ExtractionStatusEnum = SAEnum("pending", "in_progress", "completed", "failed", name="extraction_status_enum")
SubmissionStatusEnum = SAEnum("draft", "submitted", "error", name="submission_status_enum")
RunStatusEnum = SAEnum("running", "completed", "failed", name="run_status_enum")
RunTypeEnum = SAEnum("source_extraction", "claim_submission", name="run_type_enum")

DEFAULT_SOURCE = "Clinic Assist"
# Placeholder that earlier releases stored in diagnosis_description. Nothing
# writes it now; rows migrated with it are submitted without a diagnosis.
MISSING_DIAGNOSIS = "Missing diagnosis"


class Visit(db.Model):
    """One clinical encounter tracked through extraction and submission."""

    __tablename__ = "visits"
    __table_args__ = (
        db.UniqueConstraint("visit_record_no", "visit_date", name="uq_visits_record_date"),
        {"sqlite_autoincrement": True},
    )
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    visit_record_no = db.Column(db.String(64), index=True)
    visit_date = db.Column(db.Date, index=True)
    time_arrived = db.Column(db.String(16))
    time_left = db.Column(db.String(16))
    patient_name = db.Column(db.String(256))
    patient_number = db.Column(db.String(32), index=True)  # source system PCNO
    nric = db.Column(db.String(16), index=True)
    pay_type = db.Column(db.String(32), index=True)  # payer/portal routing code
    visit_type = db.Column(db.String(64))
    total_amount = db.Column(db.Numeric(14, 2))
    diagnosis_code = db.Column(db.String(32))
    diagnosis_description = db.Column(db.Text)
    symptoms = db.Column(db.Text)
    treatment_detail = db.Column(db.Text)
    line_items = db.Column(JSON)
    mc_days = db.Column(db.Integer)
    mc_start_date = db.Column(db.Date)
    source = db.Column(db.String(64), default=DEFAULT_SOURCE, nullable=False)

    extraction_status = db.Column(ExtractionStatusEnum, default="pending", nullable=False, index=True)
    extraction_attempts = db.Column(db.Integer, default=0, nullable=False)
    extraction_last_attempt_at = db.Column(db.DateTime)
    extraction_error = db.Column(db.Text)
    extraction_sources = db.Column(JSON)  # field -> scraped region tag
    extraction_metadata = db.Column(JSON)  # rejections, source_missing, timestamps

    submission_status = db.Column(SubmissionStatusEnum, nullable=True, index=True)
    submitted_at = db.Column(db.DateTime)
    submission_portal = db.Column(db.String(64))
    submission_result = db.Column(JSON)
    submission_error = db.Column(db.Text)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    @property
    def source_missing(self) -> list[str]:
        return list((self.extraction_metadata or {}).get("source_missing", []))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "visit_record_no": self.visit_record_no,
            "visit_date": self.visit_date.isoformat() if self.visit_date else None,
            "time_arrived": self.time_arrived,
            "time_left": self.time_left,
            "patient_name": self.patient_name,
            "patient_number": self.patient_number,
            "nric": self.nric,
            "pay_type": self.pay_type,
            "visit_type": self.visit_type,
            "total_amount": float(self.total_amount) if self.total_amount is not None else None,
            "diagnosis_code": self.diagnosis_code,
            "diagnosis_description": self.diagnosis_description,
            "treatment_detail": self.treatment_detail,
            "line_items": self.line_items or [],
            "mc_days": self.mc_days,
            "extraction_status": self.extraction_status,
            "extraction_attempts": self.extraction_attempts,
            "extraction_error": self.extraction_error,
            "extraction_sources": self.extraction_sources or {},
            "extraction_metadata": self.extraction_metadata or {},
            "submission_status": self.submission_status,
            "submitted_at": self.submitted_at.isoformat() if self.submitted_at else None,
            "submission_portal": self.submission_portal,
            "submission_result": self.submission_result,
            "submission_error": self.submission_error,
            "updated_at": self.updated_at.isoformat() if self.updated_at else None,
        }


class ExtractionRun(db.Model):
    """Run log: one row per batch or submission invocation."""

    __tablename__ = "rpa_extraction_runs"
    __table_args__ = {"sqlite_autoincrement": True}
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    run_type = db.Column(RunTypeEnum, nullable=False, index=True)
    status = db.Column(RunStatusEnum, default="running", nullable=False, index=True)
    started_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    finished_at = db.Column(db.DateTime)
    total_records = db.Column(db.Integer, default=0, nullable=False)
    completed_count = db.Column(db.Integer, default=0, nullable=False)
    failed_count = db.Column(db.Integer, default=0, nullable=False)
    error_message = db.Column(db.Text)
    run_metadata = db.Column("metadata", JSON)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "run_type": self.run_type,
            "status": self.status,
            "started_at": self.started_at.isoformat() if self.started_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
            "total_records": self.total_records,
            "completed_count": self.completed_count,
            "failed_count": self.failed_count,
            "error_message": self.error_message,
            "metadata": self.run_metadata or {},
        }


class Portal(db.Model):
    __tablename__ = "rpa_portals"
    __table_args__ = {"sqlite_autoincrement": True}
    id = db.Column(db.Integer, primary_key=True, autoincrement=True)
    code = db.Column(db.String(32), unique=True, nullable=False)
    name = db.Column(db.String(128))
    enabled = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)
