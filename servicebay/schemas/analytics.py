from datetime import date

from pydantic import BaseModel


class LeaderboardEntry(BaseModel):
    technician_id: int
    name: str
    certifications: list[str]
    jobs_completed: int
    total_book_time: int
    total_actual_time: int
    total_time_saved: int
    total_incentive: float
    efficiency_ratio: float
    weekly_earnings: float


class Bottleneck(BaseModel):
    certification: str
    total_jobs: int
    avg_book_time: int
    avg_actual_time: int
    over_time_percentage: int
    time_loss: int


class TrainingSuggestion(BaseModel):
    technician_id: int
    technician_name: str
    certification: str
    jobs_analyzed: int
    avg_efficiency: float
    over_time_percentage: int
    suggested_training: str
    priority: str
    potential_time_savings: int


class AnalyticsOverview(BaseModel):
    total_techs: int
    total_jobs: int
    completed_jobs: int
    in_progress_jobs: int
    available_jobs: int
    total_time_saved: int
    total_incentives_paid: float
    overall_efficiency: float


class WeeklyTrend(BaseModel):
    week_start: date
    week_end: date
    jobs_completed: int
    efficiency: float
    incentives_paid: float
