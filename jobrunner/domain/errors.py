class JobError(Exception):
    """Base exception for jobrunner errors."""
    pass

class BackendError(JobError):
    """Transient queue backend failure (connection drop, timeout)."""
    pass

class ConfigurationError(JobError):
    pass

class UnknownJobError(ConfigurationError):
    def __init__(self, name):
        self.name = name
        super().__init__(f"No worker registered for job '{name}'")

class SchedulerConfigError(ConfigurationError):
    pass

class SchedulerEmptyError(SchedulerConfigError):
    def __init__(self):
        super().__init__("schedulers not configured")

class TaskNotFoundError(SchedulerConfigError):
    def __init__(self, name):
        self.name = name
        super().__init__(f"task `{name}` not found")

class ConfigNotFoundError(SchedulerConfigError):
    def __init__(self, path, error=None):
        self.path = path
        super().__init__(f"Scheduler config file not found in path: '{path}'" + (f" ({error})" if error else ""))

class InvalidConfigSchemaError(SchedulerConfigError):
    def __init__(self, error):
        super().__init__(f"Invalid scheduler config schema. err: '{error}'")

class InvalidCronSyntaxError(SchedulerConfigError):
    def __init__(self, cron, error=None):
        self.cron = cron
        super().__init__(f"Invalid cron {cron}. err: '{error}'")

class PermanentJobError(JobError):
    """Raised by a handler when retrying cannot help. The job is dead-lettered."""
    pass

class SerializationError(PermanentJobError):
    pass

class JobNotFoundError(JobError):
    def __init__(self, job_id):
        super().__init__(f"Job {job_id} not found")

class InvalidJobStateError(JobError):
    def __init__(self, current_status, target_status):
        super().__init__(f"Cannot transition from {current_status} to {target_status}")

class RegistryError(JobError):
    pass

class RegistryFrozenError(RegistryError):
    pass

class DuplicateRegistrationError(RegistryError):
    pass
