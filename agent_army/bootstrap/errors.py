"""Error types raised by the user-data pipeline.

Messages never carry secret values. Any caller-supplied text that ends up in a
message goes through redact() first.
"""

from agent_army.bootstrap.redact import redact


class BootstrapError(Exception):
    """Base class for every pipeline failure."""


class ValidationError(BootstrapError):
    """Descriptor input is missing, malformed or inconsistent."""

    def __init__(self, field: str, message: str):
        self.field = field
        self.message = redact(message)
        super().__init__(f"{field}: {self.message}")


class ConflictError(ValidationError):
    """Two plugins declare the same secret environment variable."""

    def __init__(self, env_var: str, plugins: list[str]):
        self.env_var = env_var
        self.plugins = list(plugins)
        super().__init__(
            "plugins",
            f"secret env var {env_var} is declared by more than one plugin: "
            f"{', '.join(self.plugins)}",
        )


class UnresolvedSecretError(BootstrapError):
    """Placeholders left in the script with no bound value."""

    def __init__(self, names: list[str]):
        self.names = list(names)
        super().__init__(f"no value bound for secret(s): {', '.join(self.names)}")


class UnusedBindingError(BootstrapError):
    """Bindings supplied that no placeholder asked for.

    Usually means the caller and the template drifted apart. Logged as a
    warning by default.
    """

    def __init__(self, names: list[str]):
        self.names = [redact(n) for n in names]
        super().__init__(f"binding(s) not referenced by the script: {', '.join(self.names)}")


class PayloadTooLargeError(BootstrapError):
    """Compressed payload is still over the backend's user-data ceiling."""

    def __init__(self, actual_bytes: int, ceiling_bytes: int):
        self.actual_bytes = actual_bytes
        self.ceiling_bytes = ceiling_bytes
        super().__init__(
            f"compressed user data is {actual_bytes} bytes, limit is {ceiling_bytes} bytes "
            f"(trim workspace files or post-setup commands)"
        )


class SecretResolutionError(BootstrapError):
    """A secret producer failed while the binding was being joined."""

    def __init__(self, name: str, reason: str):
        self.name = name
        self.reason = redact(reason)
        super().__init__(f"could not resolve secret {name}: {self.reason}")
