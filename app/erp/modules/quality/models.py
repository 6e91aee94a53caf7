from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal

from sqlalchemy import JSON, Boolean, Date, DateTime, ForeignKey, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from app.erp.models import Base


class QualityStandard(Base):
    __tablename__ = "quality_standards"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    standard_code: Mapped[str] = mapped_column(String(64), nullable=False)  # e.g. ISO 9001
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    version: Mapped[str | None] = mapped_column(String(32), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="active")
    compliance_score: Mapped[Decimal | None] = mapped_column(Numeric(5, 2), nullable=True)
    last_review_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class QualityCriteria(Base):
    __tablename__ = "quality_criteria"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    standard_id: Mapped[int | None] = mapped_column(ForeignKey("quality_standards.id", ondelete="SET NULL"), nullable=True)
    criteria_name: Mapped[str] = mapped_column(String(255), nullable=False)
    category: Mapped[str | None] = mapped_column(String(64), nullable=True)
    target_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    lower_limit: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    upper_limit: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    unit: Mapped[str | None] = mapped_column(String(32), nullable=True)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)

    standard: Mapped[QualityStandard | None] = relationship(lazy="joined")


class QualityCheck(Base):
    __tablename__ = "quality_checks"
    __table_args__ = (
        Index("idx_quality_checks_company_date", "company_id", "check_date"),
        Index("idx_quality_checks_criteria", "criteria_id"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    criteria_id: Mapped[int] = mapped_column(ForeignKey("quality_criteria.id", ondelete="CASCADE"), nullable=False)
    check_date: Mapped[date] = mapped_column(Date, nullable=False)
    result: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")  # pending, pass, fail
    actual_value: Mapped[Decimal | None] = mapped_column(Numeric(14, 4), nullable=True)
    defect_rate: Mapped[Decimal | None] = mapped_column(Numeric(7, 4), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    inspector_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    criteria: Mapped[QualityCriteria] = relationship(lazy="joined")


class AuditType(Base):
    __tablename__ = "audit_types"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)  # internal, supplier, certification ...
    description: Mapped[str | None] = mapped_column(Text, nullable=True)


class QualityAudit(Base):
    __tablename__ = "quality_audits"
    __table_args__ = (Index("idx_quality_audits_company_scheduled", "company_id", "scheduled_date"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    audit_title: Mapped[str] = mapped_column(String(255), nullable=False)
    audit_type_id: Mapped[int] = mapped_column(ForeignKey("audit_types.id", ondelete="RESTRICT"), nullable=False)
    scheduled_date: Mapped[date] = mapped_column(Date, nullable=False)
    duration_days: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="planned")
    lead_auditor_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    scope: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    audit_type: Mapped[AuditType] = relationship(lazy="joined")
    findings: Mapped[list["AuditFinding"]] = relationship(back_populates="audit", cascade="all, delete-orphan")


class AuditFinding(Base):
    __tablename__ = "audit_findings"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    audit_id: Mapped[int] = mapped_column(ForeignKey("quality_audits.id", ondelete="CASCADE"), nullable=False)
    finding_type: Mapped[str] = mapped_column(String(32), nullable=False, default="observation")  # observation, minor, major
    description: Mapped[str] = mapped_column(Text, nullable=False)
    clause: Mapped[str | None] = mapped_column(String(64), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open")
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    audit: Mapped[QualityAudit] = relationship(back_populates="findings")


class NcCategory(Base):
    __tablename__ = "nc_categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    name: Mapped[str] = mapped_column(String(128), nullable=False)


class NonConformance(Base):
    __tablename__ = "non_conformances"
    __table_args__ = (
        Index("idx_non_conformances_company_status", "company_id", "status"),
        Index("idx_non_conformances_created", "created_at"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    nc_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    description: Mapped[str] = mapped_column(Text, nullable=False)
    category_id: Mapped[int] = mapped_column(ForeignKey("nc_categories.id", ondelete="RESTRICT"), nullable=False)
    severity: Mapped[str] = mapped_column(String(16), nullable=False, default="minor")  # minor, major, critical
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open")  # open, investigating, closed
    priority: Mapped[str] = mapped_column(String(16), nullable=False, default="medium")
    source: Mapped[str | None] = mapped_column(String(64), nullable=True)
    quality_check_id: Mapped[int | None] = mapped_column(ForeignKey("quality_checks.id", ondelete="SET NULL"), nullable=True)
    reported_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
    closed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=False), nullable=True)

    category: Mapped[NcCategory] = relationship(lazy="joined")


class Capa(Base):
    __tablename__ = "capas"
    __table_args__ = (Index("idx_capas_company_status", "company_id", "status"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    capa_number: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    capa_type: Mapped[str] = mapped_column(String(16), nullable=False)  # corrective, preventive
    description: Mapped[str] = mapped_column(Text, nullable=False)
    nc_id: Mapped[int | None] = mapped_column(ForeignKey("non_conformances.id", ondelete="SET NULL"), nullable=True)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open")  # open, in_progress, completed, verified, cancelled
    progress: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    assigned_to_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)

    non_conformance: Mapped[NonConformance | None] = relationship(lazy="joined")


class RootCauseAnalysis(Base):
    __tablename__ = "root_cause_analyses"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    nc_id: Mapped[int] = mapped_column(ForeignKey("non_conformances.id", ondelete="CASCADE"), nullable=False)
    method: Mapped[str] = mapped_column(String(32), nullable=False, default="5_whys")  # 5_whys, fishbone, fault_tree
    root_cause: Mapped[str] = mapped_column(Text, nullable=False)
    contributing_factors: Mapped[list | None] = mapped_column(JSON, nullable=True)
    analyzed_by_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class ContainmentAction(Base):
    __tablename__ = "containment_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    nc_id: Mapped[int] = mapped_column(ForeignKey("non_conformances.id", ondelete="CASCADE"), nullable=False)
    action_description: Mapped[str] = mapped_column(Text, nullable=False)
    status: Mapped[str] = mapped_column(String(32), nullable=False, default="open")
    due_date: Mapped[date | None] = mapped_column(Date, nullable=True)
    responsible_user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)


class QualityActivity(Base):
    __tablename__ = "quality_activities"
    __table_args__ = (Index("idx_quality_activities_company_created", "company_id", "created_at"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    company_id: Mapped[int] = mapped_column(ForeignKey("companies.id", ondelete="CASCADE"), nullable=False)
    user_id: Mapped[int | None] = mapped_column(ForeignKey("users.id", ondelete="SET NULL"), nullable=True)
    activity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[int | None] = mapped_column(Integer, nullable=True)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=False), nullable=False, default=datetime.utcnow)
