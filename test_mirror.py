import os
import signal
import threading
import paramiko
import pytest
from typing import Optional

import host
import mirror
from errors import AuthenticationError, ConfigError, NotFoundError, ToolUnavailableError, TransferError, VerificationTimeout
from imageRef import ImageReference
from mirrorConfig import Credentials, MirrorTask
from registryClient import LocalImage, Manifest, RegistryClient, Session
from transferStrategy import TransferStrategy, TransferStrategySelector
from verifier import RetryPolicy, Verifier

CREDS = Credentials("registry-b.io", "ns", "secret-token")


class FakeRegistry(RegistryClient):
    def __init__(
        self,
        *,
        login_ok: bool = True,
        copy_fails: tuple[str, ...] = (),
        copy_unavailable: bool = False,
        pull_fails: tuple[str, ...] = (),
        push_fails: tuple[str, ...] = (),
        fetch_failures: Optional[dict[str, int]] = None,
    ):
        self.login_ok = login_ok
        self.copy_fails = copy_fails
        self.copy_unavailable = copy_unavailable
        self.pull_fails = pull_fails
        self.push_fails = push_fails
        # Number of failed fetches of a pushed reference before it becomes visible
        self.fetch_failures = dict(fetch_failures or {})
        self.pushed: set[str] = set()
        self.calls: list[tuple[str, str]] = []
        self._lock = threading.Lock()

    def _call(self, op: str, ref: object) -> None:
        with self._lock:
            self.calls.append((op, str(ref)))

    def ops(self, ref: Optional[str] = None) -> list[str]:
        return [op for (op, r) in self.calls if ref is None or r == ref]

    def login(self, credentials: Credentials) -> Session:
        self._call("login", credentials.registry)
        if not self.login_ok:
            raise AuthenticationError(credentials.registry, "denied")
        return Session(credentials.registry, credentials.username)

    def _fetch_destination(self, ref: ImageReference) -> bool:
        key = str(ref)
        if key not in self.pushed:
            return False
        remaining = self.fetch_failures.get(key, 0)
        if remaining > 0:
            self.fetch_failures[key] = remaining - 1
            return False
        return True

    def copy_manifest(self, src: ImageReference, dst: ImageReference, session: Session) -> None:
        self._call("copy", src)
        if self.copy_unavailable:
            raise ToolUnavailableError(str(dst), "no buildx")
        if str(src) in self.copy_fails:
            raise TransferError(str(dst), "no manifest list")
        self.pushed.add(str(dst))

    def pull(self, src: ImageReference, session: Session) -> LocalImage:
        self._call("pull", src)
        if str(src) in self.pull_fails:
            raise TransferError(str(src), "pull failed")
        if src.registry == "registry-b.io" and not self._fetch_destination(src):
            raise TransferError(str(src), "manifest unknown")
        return LocalImage(src)

    def tag(self, local: LocalImage, dst: ImageReference) -> None:
        self._call("tag", dst)

    def push(self, dst: ImageReference, session: Session) -> None:
        self._call("push", dst)
        if str(dst) in self.push_fails:
            raise TransferError(str(dst), "push denied")
        self.pushed.add(str(dst))

    def inspect(self, ref: ImageReference, session: Session) -> Manifest:
        self._call("inspect", ref)
        if not self._fetch_destination(ref):
            raise NotFoundError(str(ref))
        return Manifest("application/vnd.oci.image.index.v1+json")


class FakeClock:
    def __init__(self) -> None:
        self.sleeps: list[float] = []

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)


def _task(name: str = "img", tag: str = "1.0") -> MirrorTask:
    return MirrorTask(ImageReference.parse(f"registry-a.io/{name}:{tag}"), ImageReference.parse(f"registry-b.io/ns/{name}:{tag}"))


def _orchestrator(client: FakeRegistry, clock: Optional[FakeClock] = None, *, max_attempts: int = 3, method: str = "pull", **kw: object) -> mirror.MirrorOrchestrator:
    clock = clock or FakeClock()
    verifier = Verifier(client, RetryPolicy(max_attempts, 2.0, clock.sleep), method)
    return mirror.MirrorOrchestrator(client, verifier, namespace="registry-b.io/ns", **kw)  # type: ignore


def test_manifest_copy_success() -> None:
    client = FakeRegistry()
    summary = _orchestrator(client).run([_task()], CREDS)

    (result,) = summary.results
    assert result.strategy == TransferStrategy.MANIFEST_COPY
    assert result.outcome == mirror.Outcome.SUCCESS
    assert result.verification_attempts == 1
    assert (summary.succeeded, summary.failed) == (1, 0)
    assert summary.exit_code() == mirror.EXIT_OK
    assert summary.namespace == "registry-b.io/ns"
    # no fallback once the manifest copy worked
    assert "push" not in client.ops()
    assert client.ops("registry-a.io/img:1.0") == ["copy"]


def test_fallback_to_pull_tag_push() -> None:
    client = FakeRegistry(copy_fails=("registry-a.io/img:1.0",))
    summary = _orchestrator(client).run([_task()], CREDS)

    (result,) = summary.results
    assert result.strategy == TransferStrategy.PULL_TAG_PUSH
    assert result.outcome == mirror.Outcome.SUCCESS
    assert client.ops("registry-a.io/img:1.0") == ["copy", "pull"]
    assert client.ops("registry-b.io/ns/img:1.0") == ["tag", "push", "pull"]
    assert summary.exit_code() == mirror.EXIT_OK


def test_fallback_when_tool_unavailable() -> None:
    client = FakeRegistry(copy_unavailable=True)
    strategy = TransferStrategySelector(client).transfer(_task(), Session("registry-b.io", "ns"))
    assert strategy == TransferStrategy.PULL_TAG_PUSH


def test_both_strategies_fail_is_isolated() -> None:
    first = _task("bad")
    second = _task("good")
    client = FakeRegistry(copy_fails=(str(first.source),), pull_fails=(str(first.source),))
    reported: list[mirror.TransferResult] = []
    summary = _orchestrator(client, on_result=reported.append).run([first, second], CREDS)

    assert [r.task for r in summary.results] == [first, second]
    assert reported == list(summary.results)
    bad, good = summary.results
    assert bad.outcome == mirror.Outcome.FAILURE
    assert bad.strategy == TransferStrategy.PULL_TAG_PUSH
    assert bad.error_detail is not None and "registry-a.io/bad:1.0" in bad.error_detail
    assert good.outcome == mirror.Outcome.SUCCESS
    assert good.strategy == TransferStrategy.MANIFEST_COPY
    assert (summary.succeeded, summary.failed) == (1, 1)
    assert summary.exit_code() == mirror.EXIT_PARTIAL


def test_push_failure_is_not_retried() -> None:
    task = _task()
    client = FakeRegistry(copy_fails=(str(task.source),), push_fails=(str(task.destination),))
    clock = FakeClock()
    summary = _orchestrator(client, clock).run([task], CREDS)

    assert summary.results[0].outcome == mirror.Outcome.FAILURE
    assert client.ops(str(task.destination)) == ["tag", "push"]
    assert clock.sleeps == []


class DroppedConnection(FakeRegistry):
    """Raises what a broken SSH transport raises instead of a TransferError."""

    def __init__(self, broken: str, **kw: object):
        super().__init__(**kw)  # type: ignore
        self.broken = broken

    def push(self, dst: ImageReference, session: Session) -> None:
        if str(dst) == self.broken:
            self._call("push", dst)
            raise paramiko.SSHException("SSH session not active")
        super().push(dst, session)

    def inspect(self, ref: ImageReference, session: Session) -> Manifest:
        if str(ref) == self.broken:
            self._call("inspect", ref)
            raise OSError("Socket is closed")
        return super().inspect(ref, session)


@pytest.mark.parametrize("parallel", [1, 2])
def test_unexpected_transfer_exception_is_isolated(parallel: int) -> None:
    first = _task("img1")
    second = _task("img2")
    client = DroppedConnection(str(first.destination), copy_fails=(str(first.source),))
    summary = _orchestrator(client, parallel=parallel).run([first, second], CREDS)

    assert [r.task for r in summary.results] == [first, second]
    bad, good = summary.results
    assert bad.outcome == mirror.Outcome.FAILURE
    assert bad.strategy == TransferStrategy.PULL_TAG_PUSH
    assert bad.error_detail == "registry-b.io/ns/img1:1.0: SSHException: SSH session not active"
    assert good.outcome == mirror.Outcome.SUCCESS
    assert client.ops(str(second.destination)) == ["pull"]
    assert summary.exit_code() == mirror.EXIT_PARTIAL


def test_unexpected_verification_exception_is_isolated() -> None:
    first = _task("img1")
    second = _task("img2")
    client = DroppedConnection(str(first.destination))
    summary = _orchestrator(client, method="inspect").run([first, second], CREDS)

    bad, good = summary.results
    assert bad.outcome == mirror.Outcome.FAILURE
    assert bad.strategy == TransferStrategy.MANIFEST_COPY
    assert bad.error_detail is not None and "OSError: Socket is closed" in bad.error_detail
    assert good.outcome == mirror.Outcome.SUCCESS


def test_fallback_on_any_copy_exception() -> None:
    task = _task()

    class BrokenCopy(FakeRegistry):
        def copy_manifest(self, src: ImageReference, dst: ImageReference, session: Session) -> None:
            self._call("copy", src)
            raise RuntimeError("buildx crashed")

    client = BrokenCopy()
    strategy = TransferStrategySelector(client).transfer(task, Session("registry-b.io", "ns"))
    assert strategy == TransferStrategy.PULL_TAG_PUSH
    assert client.ops(str(task.destination)) == ["tag", "push"]


def test_verification_succeeds_on_third_attempt() -> None:
    task = _task()
    client = FakeRegistry(fetch_failures={str(task.destination): 2})
    clock = FakeClock()
    summary = _orchestrator(client, clock).run([task], CREDS)

    (result,) = summary.results
    assert result.outcome == mirror.Outcome.SUCCESS
    assert result.verification_attempts == 3
    assert client.ops(str(task.destination)) == ["pull", "pull", "pull"]
    assert clock.sleeps == [2.0, 2.0]


def test_verification_timeout() -> None:
    task = _task()
    client = FakeRegistry(fetch_failures={str(task.destination): 5})
    clock = FakeClock()
    summary = _orchestrator(client, clock).run([task], CREDS)

    (result,) = summary.results
    assert result.outcome == mirror.Outcome.FAILURE
    assert result.strategy == TransferStrategy.MANIFEST_COPY
    assert result.verification_attempts == 3
    assert result.error_detail is not None
    assert str(task.destination) in result.error_detail
    assert "3 attempts" in result.error_detail
    assert client.ops(str(task.destination)) == ["pull", "pull", "pull"]
    assert clock.sleeps == [2.0, 2.0]
    assert summary.exit_code() == mirror.EXIT_PARTIAL


def test_verifier_raises_timeout_with_attempts() -> None:
    ref = ImageReference.parse("registry-b.io/ns/img:1.0")
    client = FakeRegistry()
    clock = FakeClock()
    verifier = Verifier(client, RetryPolicy(4, 0.5, clock.sleep), "inspect")
    with pytest.raises(VerificationTimeout) as e:
        verifier.verify(ref, Session("registry-b.io", "ns"))
    assert e.value.attempts == 4
    assert e.value.ref == str(ref)
    assert client.ops() == ["inspect"] * 4
    assert clock.sleeps == [0.5] * 3


def test_verifier_no_retry_after_success() -> None:
    ref = ImageReference.parse("registry-b.io/ns/img:1.0")
    client = FakeRegistry()
    client.pushed.add(str(ref))
    clock = FakeClock()
    assert Verifier(client, RetryPolicy(3, 2.0, clock.sleep), "inspect").verify(ref, Session("registry-b.io", "ns")) == 1
    assert client.ops() == ["inspect"]
    assert clock.sleeps == []


def test_authentication_failure_attempts_nothing(capsys: pytest.CaptureFixture[str]) -> None:
    client = FakeRegistry(login_ok=False)
    with pytest.raises(AuthenticationError):
        _orchestrator(client).run([_task("a"), _task("b")], CREDS)
    assert client.ops() == ["login"]
    assert "Finished. Success: 0, Failed: 0" in capsys.readouterr().out


def test_empty_task_list() -> None:
    client = FakeRegistry()
    with pytest.raises(ConfigError):
        _orchestrator(client).run([], CREDS)
    assert client.calls == []


def test_duplicate_destinations_rejected() -> None:
    client = FakeRegistry()
    with pytest.raises(ConfigError):
        _orchestrator(client).run([_task(), _task()], CREDS)
    assert client.calls == []


def test_one_result_per_task() -> None:
    tasks = [_task(f"img{i}") for i in range(6)]
    client = FakeRegistry(copy_fails=(str(tasks[1].source),), pull_fails=(str(tasks[1].source), str(tasks[4].source)))
    summary = _orchestrator(client).run(tasks, CREDS)
    assert [r.task for r in summary.results] == tasks
    assert (summary.succeeded, summary.failed) == (5, 1)


def test_parallel_results_in_task_order() -> None:
    tasks = [_task(f"img{i}") for i in range(8)]
    client = FakeRegistry(copy_fails=tuple(str(t.source) for t in tasks[::2]))
    summary = _orchestrator(client, parallel=4).run(tasks, CREDS)

    assert [r.task for r in summary.results] == tasks
    assert [r.strategy for r in summary.results] == [TransferStrategy.PULL_TAG_PUSH, TransferStrategy.MANIFEST_COPY] * 4
    assert (summary.succeeded, summary.failed) == (8, 0)


def test_cancel_between_tasks() -> None:
    tasks = [_task(f"img{i}") for i in range(3)]
    client = FakeRegistry()
    cancel = mirror.Cancellation()

    def on_result(result: mirror.TransferResult) -> None:
        # Interrupt arrives while the first task is running
        cancel.cancel()

    summary = _orchestrator(client, cancel=cancel, on_result=on_result).run(tasks, CREDS)
    assert [r.task for r in summary.results] == tasks[:1]
    assert summary.results[0].outcome == mirror.Outcome.SUCCESS
    assert summary.cancelled == 2
    assert summary.exit_code() == mirror.EXIT_CANCELLED
    assert "registry-a.io/img1:1.0" not in [r for (_, r) in client.calls]


def test_result_line() -> None:
    result = mirror.TransferResult(_task(), TransferStrategy.MANIFEST_COPY, mirror.Outcome.SUCCESS)
    assert str(result) == "registry-a.io/img:1.0 -> registry-b.io/ns/img:1.0: ManifestCopy: success"
    summary = mirror.MirrorSummary("registry-b.io/ns", (result,))
    assert str(summary) == "Finished. Success: 1, Failed: 0"


def test_retry_policy_validation() -> None:
    with pytest.raises(ValueError):
        RetryPolicy(0)
    with pytest.raises(ValueError):
        RetryPolicy(3, -1)


def test_first_interrupt_defers() -> None:
    cancel = mirror.Cancellation()
    previous = signal.getsignal(signal.SIGINT)
    with mirror.interrupts_deferred(cancel):
        handler = signal.getsignal(signal.SIGINT)
        assert callable(handler)
        handler(signal.SIGINT, None)
        assert cancel.requested()
    assert signal.getsignal(signal.SIGINT) is previous


def test_interrupt_spares_running_command() -> None:
    host.host_instances.clear()
    lsh = host.LocalHost()
    cancel = mirror.Cancellation()
    with mirror.interrupts_deferred(cancel):
        interrupt = threading.Timer(0.3, os.kill, (os.getpid(), signal.SIGINT))
        interrupt.start()
        ret = lsh.run(["sh", "-c", "sleep 1; echo pushed"])
        interrupt.join()
    host.host_instances.clear()
    assert cancel.requested()
    assert ret.returncode == 0
    assert ret.out == "pushed\n"
