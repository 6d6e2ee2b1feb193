"""Task broker engine errors."""


class TaskBrokerError(Exception):
    """Base error for task broker operations."""

    def __init__(self, message: str, code: str = "TASKBROKER_ERROR"):
        self.message = message
        self.code = code
        super().__init__(message)


class TaskNotFound(TaskBrokerError):
    """Task does not exist."""

    def __init__(self, task_id: str):
        super().__init__(f"No task with id '{task_id}' found", "TASK_NOT_FOUND")
        self.task_id = task_id


class AlreadyTerminal(TaskBrokerError):
    """Task is no longer processing and cannot be completed."""

    def __init__(
        self,
        task_id: str,
        current_status: str,
        requested_status: str,
        code: str = "ALREADY_TERMINAL",
    ):
        super().__init__(
            f"Refusing to update status of task '{task_id}' to '{requested_status}' "
            f"as it is currently '{current_status}', expected 'processing'",
            code,
        )
        self.task_id = task_id
        self.current_status = current_status
        self.requested_status = requested_status


class LostClaim(AlreadyTerminal):
    """The worker's claim was taken away (reclaimed or completed elsewhere)."""

    def __init__(self, task_id: str, current_status: str, requested_status: str):
        super().__init__(task_id, current_status, requested_status, code="LOST_CLAIM")


class StoreFault(TaskBrokerError):
    """Backing store I/O or connectivity failure."""

    def __init__(self, operation: str, detail: str = ""):
        message = f"Task store failure during {operation}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, "STORE_FAULT")
        self.operation = operation


class ActionNotFound(TaskBrokerError):
    """No action is registered under the requested identifier."""

    def __init__(self, action_id: str):
        super().__init__(f"Template action with ID '{action_id}' is not registered.", "ACTION_NOT_FOUND")
        self.action_id = action_id


class ActionAlreadyRegistered(TaskBrokerError):
    """An action with the same identifier is already registered."""

    def __init__(self, action_id: str):
        super().__init__(
            f"Template action with ID '{action_id}' has already been registered",
            "ACTION_ALREADY_REGISTERED",
        )
        self.action_id = action_id


class TemplateError(TaskBrokerError):
    """A template placeholder could not be resolved."""

    def __init__(self, expression: str):
        super().__init__(f"Unable to resolve template expression '{expression}'", "TEMPLATE_ERROR")
        self.expression = expression
