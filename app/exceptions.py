"""
Webhook queue exceptions.

Routes translate these into HTTP status codes; the processor loop never
lets them escape.
"""


class WebhookQueueError(Exception):
    """Base class for webhook queue errors."""


class WebhookEnqueueError(WebhookQueueError):
    """The inbound webhook could not be persisted."""


class WebhookJobNotFoundError(WebhookQueueError):
    """No webhook job exists with the given id."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Webhook job not found: {job_id}")


class InvalidJobStateError(WebhookQueueError):
    """The job's current status does not allow the requested transition."""

    def __init__(self, job_id: str, status: str, action: str):
        self.job_id = job_id
        self.status = status
        super().__init__(f"Cannot {action} webhook job {job_id} in status '{status}'")


class UnknownWebhookTypeError(WebhookQueueError):
    """No handler is registered for the job's webhook type."""

    def __init__(self, webhook_type: str):
        self.webhook_type = webhook_type
        super().__init__(f"Unrecognized webhook type: {webhook_type}")
