from enum import Enum
from errors import ToolUnavailableError, TransferError
from logger import logger
from mirrorConfig import MirrorTask
from registryClient import RegistryClient, Session


class TransferStrategy(str, Enum):
    MANIFEST_COPY = "ManifestCopy"
    """Registry to registry copy of the manifest list, keeps every platform."""

    PULL_TAG_PUSH = "PullTagPush"
    """Local pull, retag and push. Only carries the platform the local docker resolves."""

    def __str__(self) -> str:
        return self.value


class TransferStrategySelector:
    def __init__(self, client: RegistryClient):
        self.client = client

    def transfer(self, task: MirrorTask, session: Session) -> TransferStrategy:
        """Mirror one task and return the strategy that succeeded.

        A failed manifest copy, whatever the reason, falls back to pull/tag/push.
        A TransferError from the fallback is not retried; when it is raised the
        fallback was the last strategy attempted.
        """
        try:
            self.client.copy_manifest(task.source, task.destination, session)
            logger.info(f"imagetools created {task.destination} (multi-arch if upstream provided)")
            return TransferStrategy.MANIFEST_COPY
        except ToolUnavailableError as e:
            logger.warning(f"Manifest copy unavailable for {task.source} ({e.detail}), using pull/tag/push")
        except TransferError as e:
            logger.warning(f"imagetools failed; falling back to pull/tag/push for {task.source}: {e.detail}")
        except Exception as e:
            logger.warning(f"imagetools failed; falling back to pull/tag/push for {task.source}: {type(e).__name__}: {e}")

        local = self.client.pull(task.source, session)
        self.client.tag(local, task.destination)
        self.client.push(task.destination, session)
        logger.warning(f"Fallback pushed {task.destination}: only the platform of the local docker was mirrored, other platforms of {task.source} are missing")
        return TransferStrategy.PULL_TAG_PUSH
