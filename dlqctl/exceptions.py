class DLQError(Exception):
    pass


class JobValidationError(DLQError):
    pass


class JobNotFoundError(DLQError):
    def __init__(self, job_id: str):
        super().__init__(f"Job {job_id} not found")
        self.job_id = job_id


class HandlerNotFoundError(DLQError):
    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type '{job_type}'")
        self.job_type = job_type


class DatabaseError(DLQError):
    pass


class ConfigurationError(DLQError):
    pass


class CronUnauthorized(DLQError):
    def __init__(self):
        super().__init__("Unauthorized")


class SweepFailedError(DLQError):
    def __init__(self, message: str, duration_ms: int, result=None):
        super().__init__(message)
        self.duration_ms = duration_ms
        # SweepResult holding outcomes committed before the abort.
        self.result = result
