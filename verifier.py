import dataclasses
import time
from typing import Callable
import tenacity
from errors import NotFoundError, TransferError, VerificationTimeout
from imageRef import ImageReference
from logger import logger
from registryClient import RegistryClient, Session


@dataclasses.dataclass(frozen=True)
class RetryPolicy:
    max_attempts: int = 3
    # Fixed, not exponential
    backoff: float = 2.0
    sleep: Callable[[float], None] = time.sleep

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        if self.backoff < 0:
            raise ValueError("backoff can't be negative")


class Verifier:
    """Confirms a pushed image can be fetched back, allowing for registry propagation delay.

    This is the only retrying operation of a mirror run: a failed push is
    reported right away, but a registry may take a moment before a new tag
    becomes visible.
    """

    def __init__(self, client: RegistryClient, policy: RetryPolicy = RetryPolicy(), method: str = "pull"):
        if method not in ("pull", "inspect"):
            raise ValueError(f"Unknown verification method {method}")
        self.client = client
        self.policy = policy
        self.method = method

    def _fetch(self, ref: ImageReference, session: Session) -> None:
        if self.method == "inspect":
            self.client.inspect(ref, session)
        else:
            self.client.pull(ref, session)

    def verify(self, ref: ImageReference, session: Session) -> int:
        """Return the number of attempts it took, raise VerificationTimeout when all failed."""
        attempts = 0

        def attempt() -> None:
            nonlocal attempts
            attempts += 1
            logger.info(f"Verifying {ref} with {self.method} (attempt {attempts}/{self.policy.max_attempts})")
            self._fetch(ref, session)

        def before_sleep(state: tenacity.RetryCallState) -> None:
            logger.info(f"{ref} not retrievable yet, retrying in {self.policy.backoff}s")

        retrying = tenacity.Retrying(
            stop=tenacity.stop_after_attempt(self.policy.max_attempts),
            wait=tenacity.wait_fixed(self.policy.backoff),
            retry=tenacity.retry_if_exception_type((NotFoundError, TransferError)),
            sleep=self.policy.sleep,
            before_sleep=before_sleep,
        )
        try:
            retrying(attempt)
        except tenacity.RetryError as e:
            last = e.last_attempt.exception()
            raise VerificationTimeout(str(ref), attempts, str(last) if last else "")
        logger.info(f"Verification succeeded: {ref} retrieved after {attempts} attempt(s)")
        return attempts
