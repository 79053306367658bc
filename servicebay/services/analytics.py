"""Shop performance analytics.

Efficiency is flagged over clocked minutes (book / actual); above 1 means the
work beat the estimate. Jobs completed without an actual time count as on book.
"""

from collections import defaultdict
from datetime import datetime, timedelta
from typing import Iterable
import logging

from sqlalchemy import select, func
from sqlalchemy.ext.asyncio import AsyncSession

from servicebay.models.job import Job, JobStatus
from servicebay.models.user import User, UserRole, MembershipStatus

logger = logging.getLogger(__name__)

MIN_JOBS_FOR_SUGGESTION = 3
SUGGESTION_THRESHOLD = 0.9
PRIORITY_ORDER = {"High": 0, "Medium": 1, "Low": 2}
TREND_WEEKS = 8


def _actual(job: Job) -> int:
    return job.actual_time if job.actual_time is not None else job.book_time


def _ratio(book: int, actual: int) -> float:
    return round(book / actual, 2) if actual > 0 else 1.0


def _percent(part: int, whole: int) -> int:
    return int(part / whole * 100 + 0.5) if whole else 0


async def _completed_jobs(db: AsyncSession, shop_id: int) -> list[Job]:
    result = await db.execute(
        select(Job).where(Job.shop_id == shop_id, Job.status == JobStatus.COMPLETED.value)
    )
    return list(result.scalars().all())


async def _active_technicians(db: AsyncSession, shop_id: int) -> list[User]:
    result = await db.execute(
        select(User)
        .where(
            User.role == UserRole.TECHNICIAN.value,
            User.shop_id == shop_id,
            User.membership_status == MembershipStatus.APPROVED.value,
            User.is_active.is_(True),
        )
        .order_by(User.name)
    )
    return list(result.scalars().all())


def _by_tech(jobs: Iterable[Job]) -> dict[int, list[Job]]:
    grouped = defaultdict(list)
    for job in jobs:
        grouped[job.assigned_tech_id].append(job)
    return grouped


async def leaderboard(db: AsyncSession, shop_id: int) -> list[dict]:
    """Active technicians ranked by efficiency, best first."""
    jobs = _by_tech(await _completed_jobs(db, shop_id))
    entries = []
    for tech in await _active_technicians(db, shop_id):
        done = jobs.get(tech.id, [])
        book = sum(j.book_time for j in done)
        actual = sum(_actual(j) for j in done)
        entries.append({
            "technician_id": tech.id,
            "name": tech.name,
            "certifications": list(tech.certifications or []),
            "jobs_completed": len(done),
            "total_book_time": book,
            "total_actual_time": actual,
            "total_time_saved": sum(j.time_saved or 0 for j in done),
            "total_incentive": float(sum(j.incentive_earned or 0 for j in done)),
            "efficiency_ratio": _ratio(book, actual),
            "weekly_earnings": float(tech.weekly_earnings or 0),
        })
    entries.sort(key=lambda e: e["efficiency_ratio"], reverse=True)
    return entries


async def bottlenecks(db: AsyncSession, shop_id: int) -> list[dict]:
    """Certifications whose completed jobs run over book time in total."""
    groups = defaultdict(list)
    for job in await _completed_jobs(db, shop_id):
        groups[job.required_cert].append(job)

    results = []
    for cert, jobs in groups.items():
        book = sum(j.book_time for j in jobs)
        actual = sum(_actual(j) for j in jobs)
        if actual <= book:
            continue
        over = sum(1 for j in jobs if (j.actual_time or 0) > j.book_time)
        results.append({
            "certification": cert,
            "total_jobs": len(jobs),
            "avg_book_time": int(book / len(jobs) + 0.5),
            "avg_actual_time": int(actual / len(jobs) + 0.5),
            "over_time_percentage": _percent(over, len(jobs)),
            "time_loss": actual - book,
        })
    results.sort(key=lambda r: r["time_loss"], reverse=True)
    return results


def _training_priority(efficiency: float) -> str:
    if efficiency < 0.7:
        return "High"
    if efficiency < 0.85:
        return "Medium"
    return "Low"


async def training_suggestions(db: AsyncSession, shop_id: int) -> list[dict]:
    jobs = _by_tech(await _completed_jobs(db, shop_id))
    suggestions = []
    for tech in await _active_technicians(db, shop_id):
        for cert in tech.certifications or []:
            done = [j for j in jobs.get(tech.id, []) if j.required_cert == cert]
            if len(done) < MIN_JOBS_FOR_SUGGESTION:
                continue
            book = sum(j.book_time for j in done)
            actual = sum(_actual(j) for j in done)
            efficiency = book / actual if actual else 1.0
            if efficiency >= SUGGESTION_THRESHOLD:
                continue
            over = sum(1 for j in done if (j.actual_time or 0) > j.book_time)
            suggestions.append({
                "technician_id": tech.id,
                "technician_name": tech.name,
                "certification": cert,
                "jobs_analyzed": len(done),
                "avg_efficiency": round(efficiency, 2),
                "over_time_percentage": _percent(over, len(done)),
                "suggested_training": f"Advanced {cert} Training",
                "priority": _training_priority(efficiency),
                "potential_time_savings": actual - book,
            })
    suggestions.sort(key=lambda s: PRIORITY_ORDER[s["priority"]])
    return suggestions


async def overview(db: AsyncSession, shop_id: int) -> dict:
    counts = dict((await db.execute(
        select(Job.status, func.count(Job.id)).where(Job.shop_id == shop_id).group_by(Job.status)
    )).all())
    completed = await _completed_jobs(db, shop_id)
    book = sum(j.book_time for j in completed)
    actual = sum(_actual(j) for j in completed)
    return {
        "total_techs": len(await _active_technicians(db, shop_id)),
        "total_jobs": sum(counts.values()),
        "completed_jobs": counts.get(JobStatus.COMPLETED.value, 0),
        "in_progress_jobs": counts.get(JobStatus.IN_PROGRESS.value, 0),
        "available_jobs": counts.get(JobStatus.AVAILABLE.value, 0),
        "total_time_saved": sum(j.time_saved or 0 for j in completed),
        "total_incentives_paid": float(sum(j.incentive_earned or 0 for j in completed)),
        "overall_efficiency": _ratio(book, actual),
    }


async def weekly_trends(db: AsyncSession, shop_id: int, now: datetime | None = None) -> list[dict]:
    """Completed-job totals for each of the last eight 7-day windows, oldest first."""
    now = now or datetime.utcnow()
    completed = [j for j in await _completed_jobs(db, shop_id) if j.completed_at is not None]
    trends = []
    for i in range(TREND_WEEKS):
        week_end = now - timedelta(days=7 * i)
        week_start = week_end - timedelta(days=7)
        window = [j for j in completed if week_start <= j.completed_at < week_end]
        book = sum(j.book_time for j in window)
        actual = sum(_actual(j) for j in window)
        trends.insert(0, {
            "week_start": week_start.date(),
            "week_end": week_end.date(),
            "jobs_completed": len(window),
            "efficiency": _ratio(book, actual),
            "incentives_paid": float(sum(j.incentive_earned or 0 for j in window)),
        })
    return trends
