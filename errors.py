class MirrorError(Exception):
    pass


class ConfigError(MirrorError):
    """Missing credential, malformed image reference or invalid config file. Nothing has been attempted."""


class AuthenticationError(MirrorError):
    def __init__(self, registry: str, detail: str = ""):
        self.registry = registry
        self.detail = detail
        msg = f"Login to {registry} rejected"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class TransferError(MirrorError):
    def __init__(self, ref: str, detail: str):
        self.ref = ref
        self.detail = detail
        super().__init__(f"{ref}: {detail}")


class ToolUnavailableError(TransferError):
    pass


class NotFoundError(MirrorError):
    def __init__(self, ref: str, detail: str = ""):
        self.ref = ref
        self.detail = detail
        msg = f"{ref} not found"
        if detail:
            msg += f" ({detail})"
        super().__init__(msg)


class VerificationTimeout(MirrorError):
    def __init__(self, ref: str, attempts: int, detail: str = ""):
        self.ref = ref
        self.attempts = attempts
        self.detail = detail
        msg = f"{ref} not retrievable after {attempts} attempts"
        if detail:
            msg += f": {detail}"
        super().__init__(msg)


class ClusterError(Exception):
    """A helm or kubectl operation failed."""
