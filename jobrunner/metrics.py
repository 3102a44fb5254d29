from prometheus_client import Counter, Gauge, Histogram, generate_latest, CONTENT_TYPE_LATEST

# Metrics Definitions
JOBS_ENQUEUED = Counter('jobrunner_jobs_enqueued_total', 'Total jobs enqueued', ['queue', 'name'])
JOBS_CLAIMED = Counter('jobrunner_jobs_claimed_total', 'Total jobs claimed by processors', ['queue'])
JOBS_COMPLETED = Counter('jobrunner_jobs_completed_total', 'Total jobs acknowledged', ['queue', 'name'])
JOB_FAILURES = Counter('jobrunner_job_failures_total', 'Total job failures', ['queue', 'type'])  # type=retryable|final
JOB_START_DELAY = Histogram('jobrunner_job_start_delay_seconds', 'Time from run_at to claim', buckets=[0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0])

JOB_DURATION = Histogram('jobrunner_job_duration_seconds', 'Handler execution time', ['name'], buckets=[0.1, 1.0, 5.0, 10.0, 60.0, 120.0])

JOBS_INFLIGHT = Gauge(
    "jobrunner_jobs_inflight",
    "Number of jobs currently executing in this process"
)

REAPER_RECOVERED_JOBS = Counter(
    "jobrunner_reaper_recovered_jobs_total",
    "Total number of jobs recovered after their lease expired"
)

SCHEDULER_RUNS = Counter(
    "jobrunner_scheduler_runs_total",
    "Scheduled entries triggered",
    ["job", "result"]  # result=success|error
)

def render_metrics() -> tuple[bytes, str]:
    """Returns the exposition body and its content type."""
    return generate_latest(), CONTENT_TYPE_LATEST
