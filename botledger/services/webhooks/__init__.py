from botledger.services.webhooks.queue import (
    SweepResult,
    build_webhook_signature,
    enqueue_webhook,
    get_dead_letter,
    get_webhook_job,
    list_dead_letters,
    list_webhook_jobs,
    process_pending_webhooks,
    recover_stuck_webhook_jobs,
    replay_dead_letter,
    retry_delay,
)

__all__ = [
    "SweepResult",
    "build_webhook_signature",
    "enqueue_webhook",
    "get_dead_letter",
    "get_webhook_job",
    "list_dead_letters",
    "list_webhook_jobs",
    "process_pending_webhooks",
    "recover_stuck_webhook_jobs",
    "replay_dead_letter",
    "retry_delay",
]
