"""Job handler implementations."""

from commit_digest.jobs.handlers.base import HandlerRegistry, JobHandler
from commit_digest.jobs.handlers.fetch_diff import FetchDiffHandler
from commit_digest.jobs.handlers.generate_summary import GenerateSummaryHandler
from commit_digest.jobs.handlers.send_email import SendEmailHandler
from commit_digest.jobs.handlers.webhook_processing import WebhookProcessingHandler

__all__ = [
    "FetchDiffHandler",
    "GenerateSummaryHandler",
    "HandlerRegistry",
    "JobHandler",
    "SendEmailHandler",
    "WebhookProcessingHandler",
]
