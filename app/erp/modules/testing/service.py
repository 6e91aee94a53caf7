"""
Testing & QA service layer.

Runs are recorded as `running`, handed to a mock executor, then updated with
whatever the executor reports. Executors take a `random.Random` so tests can
pin their output with a seed.
"""
from __future__ import annotations

import random
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import TYPE_CHECKING, Any

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from app.erp.api import require_fields
from app.erp.audit import record_event
from app.erp.querying import get_scoped, parse_date, pct

from .models import Bug, CodeCoverageReport, TestReport, TestRun, TestSuite, UatSession

if TYPE_CHECKING:
    from app.erp.models import User

TEST_TYPES = ("integration", "security", "performance", "accessibility", "unit", "uat")
RUN_STATUSES = ("running", "passed", "failed", "error")
BUG_SEVERITIES = ("low", "medium", "high", "critical")
BUG_OPEN_STATUSES = ("open", "in_progress")
UAT_STATUSES = ("scheduled", "approved", "rejected")
REPORT_TYPES = ("summary", "detailed", "trend")

DEFAULT_WCAG_LEVEL = "WCAG_2_1_AA"
PERF_MAX_ERROR_RATE = Decimal("0.02")
PERF_MAX_AVG_MS = 500

SECURITY_RECOMMENDATIONS = ["Implement input validation", "Use HTTPS everywhere", "Regular security updates"]
ACCESSIBILITY_SUGGESTIONS = [
    "Add alt text to images",
    "Ensure sufficient color contrast",
    "Implement proper heading hierarchy",
    "Add ARIA labels where needed",
]


def _check_choice(value: Any, choices: tuple[str, ...], label: str) -> str:
    value = str(value or "").strip()
    if value not in choices:
        raise ValueError(f"Invalid {label}. Must be one of: {', '.join(choices)}")
    return value


# ---------- Mock executors ----------


def risk_level(vulnerabilities: int) -> str:
    if vulnerabilities > 3:
        return "critical"
    if vulnerabilities > 1:
        return "high"
    if vulnerabilities > 0:
        return "medium"
    return "low"


def accessibility_score(violations: int, errors: int) -> int:
    return max(0, 100 - 5 * (violations + errors))


def execute_integration(data: dict, rng: random.Random) -> dict[str, Any]:
    execution_time = rng.randint(1, 10)
    ok = rng.randint(0, 10) > 2
    return {
        "status": "passed" if ok else "failed",
        "execution_time": execution_time,
        "error_message": None if ok else "Mock integration error",
        "details": {
            "module_from": data.get("module_from"),
            "module_to": data.get("module_to"),
            "data_flow_verified": ok,
            "api_calls_tested": rng.randint(5, 20),
            "response_times": [rng.randint(100, 1000) for _ in range(5)],
        },
    }


def execute_security(data: dict, rng: random.Random) -> dict[str, Any]:
    vulnerabilities = rng.randint(0, 5)
    execution_time = rng.randint(30, 300)
    return {
        "status": "passed" if vulnerabilities == 0 else "failed",
        "execution_time": execution_time,
        "vulnerabilities_found": vulnerabilities,
        "risk_level": risk_level(vulnerabilities),
        "report": {
            "scan_summary": f"Found {vulnerabilities} vulnerabilities",
            "target": data.get("target"),
            "recommendations": list(SECURITY_RECOMMENDATIONS),
        },
    }


def execute_performance(data: dict, rng: random.Random) -> dict[str, Any]:
    avg_ms = rng.randint(200, 800)
    max_ms = rng.randint(1000, 5000)
    throughput = rng.randint(100, 1000)
    error_rate = Decimal(rng.randint(0, 5)) / 100
    execution_time = rng.randint(60, 600)
    ok = error_rate <= PERF_MAX_ERROR_RATE and avg_ms <= PERF_MAX_AVG_MS
    return {
        "status": "passed" if ok else "failed",
        "execution_time": execution_time,
        "average_response_time": avg_ms,
        "max_response_time": max_ms,
        "throughput": throughput,
        "error_rate": float(error_rate),
        "performance_data": {
            "load_parameters": data.get("load_parameters") or {},
            "percentiles": {
                "p50": round(avg_ms * 0.75),
                "p95": round(avg_ms + (max_ms - avg_ms) * 0.5),
                "p99": round(avg_ms + (max_ms - avg_ms) * 0.9),
            },
        },
    }


def execute_accessibility(data: dict, rng: random.Random) -> dict[str, Any]:
    violations = rng.randint(0, 10)
    errors = rng.randint(0, 5)
    warnings = rng.randint(0, 15)
    execution_time = rng.randint(10, 60)
    wcag = data.get("wcag_level") or DEFAULT_WCAG_LEVEL
    return {
        "status": "passed" if errors == 0 else "failed",
        "execution_time": execution_time,
        "violations_count": violations,
        "errors_count": errors,
        "warnings_count": warnings,
        "overall_score": accessibility_score(violations, errors),
        "wcag_level": wcag,
        "report": {
            "summary": f"Found {violations + errors + warnings} accessibility issues",
            "critical_issues": errors,
            "improvement_suggestions": list(ACCESSIBILITY_SUGGESTIONS),
        },
    }


# test_type -> (required payload fields, executor)
RUNNERS = {
    "integration": (("test_name", "module_from", "module_to", "test_scenario"), execute_integration),
    "security": (("test_name", "target"), execute_security),
    "performance": (("test_name", "target", "load_parameters"), execute_performance),
    "accessibility": (("test_name", "target"), execute_accessibility),
}


def run_test(s: Session, test_type: str, payload: dict, *, user: User, rng: random.Random | None = None) -> TestRun:
    if test_type not in RUNNERS:
        raise ValueError(f"Invalid test type. Must be one of: {', '.join(RUNNERS)}")
    fields, executor = RUNNERS[test_type]
    require_fields(payload, fields)

    suite_id = payload.get("suite_id")
    if suite_id not in (None, ""):
        suite = get_scoped(s, TestSuite, suite_id, user.company_id)
        if suite is None:
            raise ValueError("Test suite not found")
        suite_id = suite.id
    else:
        suite_id = None

    run = TestRun(
        company_id=user.company_id,
        suite_id=suite_id,
        test_type=test_type,
        test_name=str(payload["test_name"]).strip(),
        target=payload.get("target") or payload.get("module_to"),
        status="running",
        triggered_by_user_id=user.id,
    )
    s.add(run)
    s.flush()

    result = executor(payload, rng or random.Random())

    run.status = result["status"]
    run.execution_time = Decimal(result["execution_time"])
    run.error_message = result.get("error_message")
    run.result = result
    if test_type == "security":
        run.vulnerabilities_found = result["vulnerabilities_found"]
        run.risk_level = result["risk_level"]
    elif test_type == "performance":
        run.avg_response_time = Decimal(result["average_response_time"])
        run.max_response_time = Decimal(result["max_response_time"])
        run.throughput = Decimal(result["throughput"])
        run.error_rate = Decimal(str(result["error_rate"]))
    elif test_type == "accessibility":
        run.accessibility_score = Decimal(result["overall_score"])
        run.wcag_level = result["wcag_level"]
    run.completed_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action=f"testing.{test_type}.run",
        entity_type="TestRun",
        entity_id=str(run.id),
        metadata={"status": run.status, "test_name": run.test_name},
    )
    return run


# ---------- Reads / aggregates ----------


def run_overview(s: Session, company_id: int, test_type: str | None = None) -> dict[str, Any]:
    q = select(
        func.count(TestRun.id),
        func.coalesce(func.sum(case((TestRun.status == "passed", 1), else_=0)), 0),
        func.coalesce(func.sum(case((TestRun.status == "failed", 1), else_=0)), 0),
        func.avg(TestRun.execution_time),
    ).where(TestRun.company_id == company_id, TestRun.status != "running")
    if test_type:
        q = q.where(TestRun.test_type == test_type)
    total, passed, failed, avg_time = s.execute(q).one()
    return {
        "total": total,
        "passed": passed,
        "failed": failed,
        "pass_rate": pct(passed, total),
        "avg_execution_time": round(float(avg_time), 2) if avg_time is not None else None,
    }


def recent_runs(s: Session, company_id: int, test_type: str | None = None, limit: int = 20) -> list[TestRun]:
    q = s.query(TestRun).filter(TestRun.company_id == company_id)
    if test_type:
        q = q.filter(TestRun.test_type == test_type)
    return q.order_by(TestRun.created_at.desc(), TestRun.id.desc()).limit(limit).all()


def vulnerabilities_by_risk(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(TestRun.risk_level, func.count(TestRun.id), func.coalesce(func.sum(TestRun.vulnerabilities_found), 0))
        .where(TestRun.company_id == company_id, TestRun.test_type == "security", TestRun.risk_level.is_not(None))
        .group_by(TestRun.risk_level)
        .order_by(TestRun.risk_level)
    ).all()
    return [{"risk_level": r, "runs": n, "vulnerabilities": v} for r, n, v in rows]


def performance_summary(s: Session, company_id: int) -> dict[str, Any]:
    avg_rt, avg_tp, avg_err = s.execute(
        select(func.avg(TestRun.avg_response_time), func.avg(TestRun.throughput), func.avg(TestRun.error_rate)).where(
            TestRun.company_id == company_id, TestRun.test_type == "performance", TestRun.status != "running"
        )
    ).one()
    return {
        "avg_response_time": round(float(avg_rt), 1) if avg_rt is not None else None,
        "avg_throughput": round(float(avg_tp), 1) if avg_tp is not None else None,
        "avg_error_rate": round(float(avg_err), 4) if avg_err is not None else None,
    }


def average_accessibility_score(s: Session, company_id: int) -> float | None:
    avg = s.execute(
        select(func.avg(TestRun.accessibility_score)).where(
            TestRun.company_id == company_id, TestRun.test_type == "accessibility"
        )
    ).scalar_one()
    return round(float(avg), 2) if avg is not None else None


def coverage_by_module(s: Session, company_id: int) -> list[dict[str, Any]]:
    rows = s.execute(
        select(
            CodeCoverageReport.module_name,
            func.sum(CodeCoverageReport.covered_lines),
            func.sum(CodeCoverageReport.total_lines),
            func.sum(CodeCoverageReport.lines_of_code),
        )
        .where(CodeCoverageReport.company_id == company_id)
        .group_by(CodeCoverageReport.module_name)
        .order_by(CodeCoverageReport.module_name)
    ).all()
    return [
        {"module_name": m, "covered_lines": c or 0, "total_lines": t or 0, "lines_of_code": loc or 0, "coverage": pct(c, t)}
        for m, c, t, loc in rows
    ]


def uat_overview(s: Session, company_id: int) -> dict[str, Any]:
    sessions = (
        s.query(UatSession)
        .filter(UatSession.company_id == company_id)
        .order_by(UatSession.session_date.desc(), UatSession.id.desc())
        .all()
    )
    decided = [u for u in sessions if u.status in ("approved", "rejected")]
    approved = sum(1 for u in decided if u.status == "approved")
    return {"sessions": sessions, "approval_rate": pct(approved, len(decided))}


def automation_overview(s: Session, company_id: int, *, now: datetime | None = None) -> dict[str, Any]:
    now = now or datetime.utcnow()
    suites = (
        s.query(TestSuite)
        .filter(TestSuite.company_id == company_id, TestSuite.is_automated.is_(True))
        .order_by(TestSuite.suite_name)
        .all()
    )
    runs_7d = s.execute(
        select(func.count(TestRun.id)).where(
            TestRun.company_id == company_id,
            TestRun.suite_id.in_([x.id for x in suites]) if suites else TestRun.id.is_(None),
            TestRun.created_at >= now - timedelta(days=7),
        )
    ).scalar_one()
    return {"suites": suites, "runs_7d": runs_7d}


def quality_metrics(s: Session, company_id: int) -> dict[str, Any]:
    covered, total, loc = s.execute(
        select(
            func.sum(CodeCoverageReport.covered_lines),
            func.sum(CodeCoverageReport.total_lines),
            func.sum(CodeCoverageReport.lines_of_code),
        ).where(CodeCoverageReport.company_id == company_id)
    ).one()
    bug_count = s.execute(select(func.count(Bug.id)).where(Bug.company_id == company_id)).scalar_one()

    resolved = (
        s.query(Bug.created_at, Bug.resolved_at)
        .filter(Bug.company_id == company_id, Bug.resolved_at.is_not(None))
        .all()
    )
    hours = [(r.resolved_at - r.created_at).total_seconds() / 3600 for r in resolved]

    return {
        "test_coverage": pct(covered, total),
        "bug_density": round(bug_count / loc * 1000, 2) if loc else None,
        "mttr_hours": round(sum(hours) / len(hours), 2) if hours else None,
        "open_bugs": s.execute(
            select(func.count(Bug.id)).where(Bug.company_id == company_id, Bug.status.in_(BUG_OPEN_STATUSES))
        ).scalar_one(),
        "total_bugs": bug_count,
    }


def list_bugs(s: Session, company_id: int, limit: int = 50) -> list[Bug]:
    return (
        s.query(Bug)
        .filter(Bug.company_id == company_id)
        .order_by(Bug.created_at.desc(), Bug.id.desc())
        .limit(limit)
        .all()
    )


def list_reports(s: Session, company_id: int, limit: int = 20) -> list[TestReport]:
    return (
        s.query(TestReport)
        .filter(TestReport.company_id == company_id)
        .order_by(TestReport.created_at.desc(), TestReport.id.desc())
        .limit(limit)
        .all()
    )


# ---------- Suites, coverage, bugs, UAT ----------


def create_suite(s: Session, payload: dict, *, user: User) -> TestSuite:
    require_fields(payload, ("suite_name", "test_type"))
    suite = TestSuite(
        company_id=user.company_id,
        suite_name=str(payload["suite_name"]).strip(),
        test_type=_check_choice(payload.get("test_type"), TEST_TYPES, "test type"),
        description=payload.get("description"),
        is_automated=bool(payload.get("is_automated")),
    )
    s.add(suite)
    s.flush()
    record_event(s, actor=user, action="testing.suite.create", entity_type="TestSuite", entity_id=str(suite.id))
    return suite


def record_coverage(s: Session, payload: dict, *, user: User) -> CodeCoverageReport:
    require_fields(payload, ("module_name",))
    try:
        total = int(payload.get("total_lines") or 0)
        covered = int(payload.get("covered_lines") or 0)
        loc = int(payload.get("lines_of_code") or total)
    except (TypeError, ValueError):
        raise ValueError("Line counts must be integers")
    if min(total, covered, loc) < 0 or covered > total:
        raise ValueError("covered_lines must be between 0 and total_lines")

    row = CodeCoverageReport(
        company_id=user.company_id,
        module_name=str(payload["module_name"]).strip(),
        total_lines=total,
        covered_lines=covered,
        lines_of_code=loc,
    )
    s.add(row)
    s.flush()
    record_event(
        s,
        actor=user,
        action="testing.coverage.record",
        entity_type="CodeCoverageReport",
        entity_id=str(row.id),
        metadata={"module": row.module_name, "coverage": pct(covered, total)},
    )
    return row


def report_bug(s: Session, payload: dict, *, user: User) -> Bug:
    require_fields(payload, ("title",))
    bug = Bug(
        company_id=user.company_id,
        title=str(payload["title"]).strip(),
        severity=_check_choice(payload.get("severity") or "medium", BUG_SEVERITIES, "severity"),
        module_name=payload.get("module_name"),
        status="open",
    )
    s.add(bug)
    s.flush()
    record_event(s, actor=user, action="testing.bug.create", entity_type="Bug", entity_id=str(bug.id))
    return bug


def resolve_bug(s: Session, bug: Bug, *, user: User) -> Bug:
    if bug.status not in BUG_OPEN_STATUSES:
        raise ValueError("Bug is already resolved")
    bug.status = "resolved"
    bug.resolved_at = datetime.utcnow()
    record_event(s, actor=user, action="testing.bug.resolve", entity_type="Bug", entity_id=str(bug.id))
    return bug


def record_uat_session(s: Session, payload: dict, *, user: User) -> UatSession:
    require_fields(payload, ("session_name",))
    row = UatSession(
        company_id=user.company_id,
        session_name=str(payload["session_name"]).strip(),
        feature=payload.get("feature"),
        tester_name=payload.get("tester_name"),
        status=_check_choice(payload.get("status") or "scheduled", UAT_STATUSES, "status"),
        session_date=parse_date(payload.get("session_date")) or date.today(),
        feedback=payload.get("feedback"),
    )
    s.add(row)
    s.flush()
    record_event(
        s,
        actor=user,
        action="testing.uat.record",
        entity_type="UatSession",
        entity_id=str(row.id),
        metadata={"status": row.status},
    )
    return row


# ---------- Reports ----------


def _report_summary(s: Session, company_id: int, date_from: date | None, date_to: date | None, test_types: list) -> dict:
    q = select(
        TestRun.test_type,
        func.count(TestRun.id),
        func.coalesce(func.sum(case((TestRun.status == "passed", 1), else_=0)), 0),
        func.coalesce(func.sum(case((TestRun.status.in_(("failed", "error")), 1), else_=0)), 0),
        func.avg(TestRun.execution_time),
    ).where(TestRun.company_id == company_id, TestRun.status != "running")
    if date_from:
        q = q.where(TestRun.created_at >= datetime(date_from.year, date_from.month, date_from.day))
    if date_to:
        q = q.where(TestRun.created_at < datetime(date_to.year, date_to.month, date_to.day) + timedelta(days=1))
    if test_types:
        q = q.where(TestRun.test_type.in_(test_types))
    rows = s.execute(q.group_by(TestRun.test_type).order_by(TestRun.test_type)).all()

    by_type = {
        t: {
            "total": n,
            "passed": p,
            "failed": f,
            "pass_rate": pct(p, n),
            "avg_execution_time": round(float(avg), 2) if avg is not None else None,
        }
        for t, n, p, f, avg in rows
    }
    total = sum(v["total"] for v in by_type.values())
    passed = sum(v["passed"] for v in by_type.values())
    failed = sum(v["failed"] for v in by_type.values())
    return {
        "summary": {"total_tests": total, "passed_tests": passed, "failed_tests": failed, "success_rate": pct(passed, total)},
        "by_type": by_type,
        "quality_metrics": quality_metrics(s, company_id),
    }


def generate_test_report(s: Session, payload: dict, *, user: User) -> TestReport:
    require_fields(payload, ("report_type",))
    report_type = _check_choice(payload.get("report_type"), REPORT_TYPES, "report type")
    date_from = parse_date(payload.get("date_from"))
    date_to = parse_date(payload.get("date_to"))
    if date_from and date_to and date_from > date_to:
        raise ValueError("date_from must be on or before date_to")
    test_types = payload.get("test_types") or []
    if not isinstance(test_types, list) or any(t not in TEST_TYPES for t in test_types):
        raise ValueError(f"test_types must be a list drawn from: {', '.join(TEST_TYPES)}")

    report = TestReport(
        company_id=user.company_id,
        report_name=str(payload.get("report_name") or f"{report_type.title()} test report").strip(),
        report_type=report_type,
        date_from=date_from,
        date_to=date_to,
        status="generating",
        generated_by_user_id=user.id,
    )
    s.add(report)
    s.flush()

    report.summary = _report_summary(s, user.company_id, date_from, date_to, test_types)
    report.status = "completed"
    report.completed_at = datetime.utcnow()

    record_event(
        s,
        actor=user,
        action="testing.report.generate",
        entity_type="TestReport",
        entity_id=str(report.id),
        metadata={"report_type": report_type, "total_tests": report.summary["summary"]["total_tests"]},
    )
    return report
