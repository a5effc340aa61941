"""Email campaign delivery queue.

This package turns a campaign and its recipient lists into persisted queue
items and drives each item to a terminal state:

- Producer expanding campaigns into deduplicated pending items
- Worker loop claiming due items in small batches with retry backoff
- Per-server rate limiting (per minute, hour, day) with deferral
- Reclaimer returning items abandoned in ``processing``
- SMTP, SendGrid and Mailgun delivery transports
- FastAPI REST API, click CLI and Prometheus metrics

Example:
    Basic usage with the FastAPI application::

        from campaign_queue.service import QueueService
        from campaign_queue.api import create_app

        service = QueueService(db_path="/data/campaign_queue.db")
        app = create_app(service, api_token="secret")
"""

__version__ = "0.1.0"
