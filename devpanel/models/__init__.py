"""Database models"""

from devpanel.models.ai_signal import AISignal
from devpanel.models.api_cache import APICacheEntry
from devpanel.models.flow_metrics import CommitMetrics, IssueMetrics, PullRequestMetrics
from devpanel.models.sampled_repo import SampledRepo
from devpanel.models.sampled_user import SampledUser
from devpanel.models.sync_job import SyncJob, SyncJobStatus, SyncJobType
from devpanel.models.user_contribution_daily import UserContributionDaily

__all__ = [
    "AISignal",
    "APICacheEntry",
    "CommitMetrics",
    "IssueMetrics",
    "PullRequestMetrics",
    "SampledRepo",
    "SampledUser",
    "SyncJob",
    "SyncJobStatus",
    "SyncJobType",
    "UserContributionDaily",
]
