"""Exceptions raised by the provisioning core."""


class ProvisionerError(Exception):
    """Base class for all addonctl errors."""


class ConfigurationError(ProvisionerError):
    """Application or resource declaration is invalid (duplicates, cycles, unknown kinds)."""


class ContextLookupError(ProvisionerError):
    """Cluster context could not be read from the environment."""


class TemplateError(ProvisionerError):
    """Template is malformed, references an undefined variable or received an unsafe value."""

    def __init__(self, message: str, template_name: str | None = None):
        self.template_name = template_name
        if template_name:
            message = f"{template_name}: {message}"
        super().__init__(message)


class CommandError(ProvisionerError):
    """External command exited with a non-zero status."""

    def __init__(self, cmd: list[str], returncode: int, stderr: str = ""):
        self.cmd = cmd
        self.returncode = returncode
        self.stderr = stderr.strip()
        super().__init__(
            f"Command '{' '.join(cmd[:3])}' failed with exit code {returncode}: {self.stderr}"
        )


class ResourceError(ProvisionerError):
    """Wraps a collaborator failure with the resource name and kind."""

    action = "process"

    def __init__(self, name: str, kind: str, cause: Exception):
        self.name = name
        self.kind = kind
        self.cause = cause
        super().__init__(f"Failed to {self.action} {kind} resource '{name}': {cause}")


class ResourceLookupError(ResourceError):
    action = "look up"


class ResourceCreateError(ResourceError):
    action = "create"


class ResourceUpdateError(ResourceError):
    action = "update"


class ResourceDeleteError(ResourceError):
    action = "delete"


class TeardownError(ProvisionerError):
    """One or more resources failed to delete during teardown."""

    def __init__(self, errors: list[ProvisionerError]):
        self.errors = errors
        messages = [str(e) for e in errors]
        super().__init__(
            f"Teardown failed for {len(errors)} resource(s): {'; '.join(messages)}"
        )


class InstallError(ProvisionerError):
    """Package apply failed. The workload may be partially applied; re-running is safe."""

    retryable = True

    def __init__(self, release: str, message: str):
        self.release = release
        super().__init__(
            f"Install of release '{release}' failed: {message}. "
            "The release may be in a partial state; re-run to retry."
        )


class ReadinessTimeoutError(ProvisionerError):
    """Package applied but the workload did not report ready before the deadline."""

    def __init__(self, release: str, timeout_seconds: float, cancelled: bool = False):
        self.release = release
        self.timeout_seconds = timeout_seconds
        self.cancelled = cancelled
        reason = "waiting was cancelled" if cancelled else f"not ready after {timeout_seconds:.0f}s"
        super().__init__(f"Release '{release}' was applied but {reason}")
