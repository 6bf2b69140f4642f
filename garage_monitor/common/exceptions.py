"""
Custom Exception Classes for the Garage Door Monitor

Hierarchical exception structure for error handling across the entity store,
the orchestration engine and the notification activity.
"""


class MonitorError(Exception):
    """Base exception for all garage monitor errors"""

    def __init__(self, message: str, recoverable: bool = True):
        self.message = message
        self.recoverable = recoverable
        super().__init__(message)


class ConfigError(MonitorError):
    """Configuration-related errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Config Error: {message}", recoverable)


class ConfigurationMissing(ConfigError):
    """A required credential or setting is absent"""

    def __init__(self, setting: str):
        self.setting = setting
        super().__init__(f"missing required setting '{setting}'", recoverable=True)


class LockingViolation(MonitorError):
    """Entity critical-section protocol was broken"""

    def __init__(self, message: str, entity: str | None = None, owner: str | None = None):
        self.entity = entity
        self.owner = owner
        super().__init__(f"Locking Violation: {message}", recoverable=True)


class EntityOperationError(MonitorError):
    """Entity was asked to run an operation it does not support"""

    def __init__(self, entity: str, operation: str):
        self.entity = entity
        self.operation = operation
        super().__init__(
            f"Entity Error: {entity} has no operation '{operation}'",
            recoverable=False,
        )


class NotificationFailure(MonitorError):
    """Outbound messaging call failed or returned a non-success status"""

    def __init__(self, message: str, status_code: int | None = None):
        self.status_code = status_code
        super().__init__(f"Notification Failure: {message}", recoverable=True)


class OrchestrationError(MonitorError):
    """Orchestration host errors"""

    def __init__(self, message: str, recoverable: bool = False):
        super().__init__(f"Orchestration Error: {message}", recoverable)


class InstanceNotFound(OrchestrationError):
    """No orchestration instance exists with the given id"""

    def __init__(self, instance_id: str):
        self.instance_id = instance_id
        super().__init__(f"instance '{instance_id}' not found")


class OrchestratorNotRegistered(OrchestrationError):
    """Start was requested for an orchestrator or activity nobody registered"""

    def __init__(self, name: str):
        self.name = name
        super().__init__(f"'{name}' is not registered")


class ActivityFailed(OrchestrationError):
    """An activity raised; re-raised inside the orchestrator"""

    def __init__(self, activity: str, reason: str):
        self.activity = activity
        self.reason = reason
        super().__init__(f"activity '{activity}' failed: {reason}", recoverable=True)


class NonDeterminismError(OrchestrationError):
    """Replayed orchestrator diverged from its recorded step log"""

    def __init__(self, seq: int, expected: str, recorded: str):
        self.seq = seq
        self.expected = expected
        self.recorded = recorded
        super().__init__(
            f"non-deterministic orchestrator: step {seq} expected {expected}, history has {recorded}"
        )
