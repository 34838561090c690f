import contextlib
import dataclasses
import signal
import threading
import types
from concurrent.futures import Future, ThreadPoolExecutor
from enum import Enum
from typing import Callable, Iterator, Optional
from errors import AuthenticationError, ConfigError, MirrorError, TransferError, VerificationTimeout
from logger import logger
from mirrorConfig import Credentials, MirrorTask
from registryClient import RegistryClient, Session
from transferStrategy import TransferStrategy, TransferStrategySelector
from verifier import Verifier
import timer

EXIT_OK = 0
EXIT_CONFIG = 1
EXIT_PARTIAL = 2
EXIT_CANCELLED = 130


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"

    def __str__(self) -> str:
        return self.value


@dataclasses.dataclass(frozen=True)
class TransferResult:
    task: MirrorTask
    # When both strategies failed this is the fallback, it is always tried last
    strategy: TransferStrategy
    outcome: Outcome
    error_detail: Optional[str] = None
    verification_attempts: int = 0

    def success(self) -> bool:
        return self.outcome == Outcome.SUCCESS

    def __str__(self) -> str:
        s = f"{self.task.source} -> {self.task.destination}: {self.strategy}: {self.outcome}"
        if self.error_detail:
            s += f" ({self.error_detail})"
        return s


@dataclasses.dataclass(frozen=True)
class MirrorSummary:
    namespace: str
    results: tuple[TransferResult, ...] = ()
    # Tasks not attempted because the run was interrupted
    cancelled: int = 0

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success())

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success())

    def exit_code(self) -> int:
        if self.cancelled:
            return EXIT_CANCELLED
        if self.failed:
            return EXIT_PARTIAL
        return EXIT_OK

    def __str__(self) -> str:
        s = f"Finished. Success: {self.succeeded}, Failed: {self.failed}"
        if self.cancelled:
            s += f", Cancelled: {self.cancelled}"
        return s


def _unexpected(task: MirrorTask, e: Exception) -> str:
    logger.debug(f"{task} raised", exc_info=True)
    return f"{task.destination}: {type(e).__name__}: {e}"


class Cancellation:
    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def requested(self) -> bool:
        return self._event.is_set()


@contextlib.contextmanager
def interrupts_deferred(cancel: Cancellation) -> Iterator[Cancellation]:
    """Turn the first SIGINT into a cancellation request honoured between tasks.

    A second SIGINT interrupts immediately.
    """
    if threading.current_thread() is not threading.main_thread():
        yield cancel
        return

    previous = signal.getsignal(signal.SIGINT)

    def handler(signum: int, frame: Optional[types.FrameType]) -> None:
        if cancel.requested():
            logger.error_and_exit("Interrupted again, aborting", exit_code=EXIT_CANCELLED)
        logger.warning("Interrupt received, finishing the task in progress. Interrupt again to abort now")
        cancel.cancel()

    signal.signal(signal.SIGINT, handler)
    try:
        yield cancel
    finally:
        signal.signal(signal.SIGINT, previous)


class MirrorOrchestrator:
    def __init__(
        self,
        client: RegistryClient,
        verifier: Verifier,
        *,
        namespace: str = "",
        parallel: int = 1,
        cancel: Optional[Cancellation] = None,
        on_result: Optional[Callable[[TransferResult], None]] = None,
    ):
        self.client = client
        self.selector = TransferStrategySelector(client)
        self.verifier = verifier
        self.namespace = namespace
        self.parallel = max(1, parallel)
        self.cancel = cancel or Cancellation()
        self.on_result = on_result

    def _report(self, result: TransferResult) -> None:
        if result.success():
            logger.info(str(result))
        else:
            logger.error(str(result))
        if self.on_result is not None:
            self.on_result(result)

    def process(self, task: MirrorTask, session: Session) -> TransferResult:
        logger.info(f"Processing: {task}")
        sw = timer.StopWatch.started()
        try:
            strategy = self.selector.transfer(task, session)
        except TransferError as e:
            return TransferResult(task, TransferStrategy.PULL_TAG_PUSH, Outcome.FAILURE, str(e))
        except Exception as e:
            return TransferResult(task, TransferStrategy.PULL_TAG_PUSH, Outcome.FAILURE, _unexpected(task, e))

        try:
            attempts = self.verifier.verify(task.destination, session)
        except VerificationTimeout as e:
            return TransferResult(task, strategy, Outcome.FAILURE, str(e), e.attempts)
        except MirrorError as e:
            return TransferResult(task, strategy, Outcome.FAILURE, str(e))
        except Exception as e:
            return TransferResult(task, strategy, Outcome.FAILURE, _unexpected(task, e))
        logger.debug(f"{task} took {sw}")
        return TransferResult(task, strategy, Outcome.SUCCESS, None, attempts)

    def _process_reported(self, task: MirrorTask, session: Session) -> TransferResult:
        result = self.process(task, session)
        self._report(result)
        return result

    def run(self, tasks: list[MirrorTask], credentials: Credentials) -> MirrorSummary:
        if not tasks:
            raise ConfigError("No images to mirror")
        dsts = [str(t.destination) for t in tasks]
        if len(set(dsts)) != len(dsts):
            raise ConfigError("Every image needs its own destination")

        try:
            session = self.client.login(credentials)
        except AuthenticationError:
            # Fatal, nothing is attempted without a session
            logger.info(str(MirrorSummary(self.namespace)))
            raise

        if self.parallel == 1:
            results = self._run_sequential(tasks, session)
        else:
            results = self._run_parallel(tasks, session)

        summary = MirrorSummary(self.namespace, tuple(results), len(tasks) - len(results))
        logger.info(str(summary))
        if self.namespace:
            logger.info(f"Mirrored images are under: {self.namespace}")
        return summary

    def _run_sequential(self, tasks: list[MirrorTask], session: Session) -> list[TransferResult]:
        results: list[TransferResult] = []
        for task in tasks:
            if self.cancel.requested():
                logger.warning(f"Run cancelled, skipping {len(tasks) - len(results)} remaining task(s)")
                break
            results.append(self._process_reported(task, session))
        return results

    def _run_parallel(self, tasks: list[MirrorTask], session: Session) -> list[TransferResult]:
        def guarded(task: MirrorTask) -> Optional[TransferResult]:
            if self.cancel.requested():
                return None
            return self._process_reported(task, session)

        with ThreadPoolExecutor(max_workers=self.parallel) as executor:
            futures: list[Future[Optional[TransferResult]]] = [executor.submit(guarded, t) for t in tasks]
            # Results in task order, whatever the completion order
            collected = [f.result() for f in futures]
        results = [r for r in collected if r is not None]
        if len(results) != len(tasks):
            logger.warning(f"Run cancelled, skipped {len(tasks) - len(results)} task(s)")
        return results
