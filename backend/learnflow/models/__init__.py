from .job import VideoProcess
from .quota import QuotaUsage, QuotaUsageLog, QuotaAlert, UserSubscription
from .abuse import BlacklistEntry, VideoCooldown
