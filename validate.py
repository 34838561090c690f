import dataclasses
from typing import Optional
from errors import NotFoundError, TransferError
from imageRef import ImageReference
from logger import logger
from registryClient import Platform, RegistryClient, Session


@dataclasses.dataclass(frozen=True)
class ImageCheck:
    ref: ImageReference
    exists: bool
    platforms: tuple[Platform, ...] = ()
    # Only set when the manifest had no platform list and a pull was tried
    pull_ok: Optional[bool] = None
    detail: str = ""


def check_image(client: RegistryClient, ref: ImageReference, session: Session) -> ImageCheck:
    logger.info(f"Checking: {ref}")
    try:
        manifest = client.inspect(ref, session)
    except (NotFoundError, TransferError) as e:
        logger.error(f"Missing: {ref}")
        return ImageCheck(ref, False, detail=str(e))

    logger.info(f"Exists: {ref}")
    if manifest.platforms:
        logger.info("Detected platforms: " + ", ".join(str(p) for p in manifest.platforms))
        return ImageCheck(ref, True, manifest.platforms)

    logger.info(f"No platform list for {ref}, likely single-arch. Attempting pull to verify availability")
    try:
        client.pull(ref, session)
    except TransferError as e:
        logger.warning(f"pull of {ref} failed: {e.detail}")
        return ImageCheck(ref, True, pull_ok=False, detail=e.detail)
    logger.info(f"pull of {ref} OK (image available)")
    return ImageCheck(ref, True, pull_ok=True)


def validate_images(client: RegistryClient, refs: list[ImageReference], session: Session) -> list[ImageCheck]:
    checks = [check_image(client, ref, session) for ref in refs]
    missing = [c for c in checks if not c.exists]
    if missing:
        logger.warning(f"Validation: {len(missing)} of {len(checks)} images are missing")
    else:
        logger.info("Validation: all expected images exist (double-check platforms for each above)")
    return checks
