# control_plane/jobqueue/jobs.py
"""Job types known to the control plane workers."""

from control_plane.jobqueue.base import JobOptions, JobType


# Deployments run once: a half-applied reset is not something to replay blindly
PROCESS_DEPLOYMENT = JobType(
    name="ProcessDeployment",
    options=JobOptions(max_tries=1, timeout=600),
)

CHECK_ALERTS = JobType(
    name="CheckAlerts",
    options=JobOptions(max_tries=3, timeout=120, backoff=(10, 30, 90)),
)

RECORD_METRICS = JobType(
    name="SystemMonitor",
    options=JobOptions(max_tries=3, timeout=120, backoff=(10, 30, 90)),
)

JOB_TYPES = {
    job_type.name: job_type
    for job_type in (PROCESS_DEPLOYMENT, CHECK_ALERTS, RECORD_METRICS)
}
