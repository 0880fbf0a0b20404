"""Resource Materializer: idempotent directories and files on the host.

``ensure_directory`` and ``write_file`` are the only two ways the
provisioner puts anything on disk under the install root. Both converge
the target to an exact state (content, owner, permission bits), so calling
them again on an already-correct target is a silent success.

Why This Matters:
    The generated ``.env`` file holds both service passwords. It must never
    exist, even for an instant, with world-readable bits. Files are written
    to a temporary sibling created with the final mode and then renamed into
    place, so readers see either the old file or the complete new one.

Key Concepts:
    Overwrite, never merge: content is always regenerated from the current
        Configuration Set. Manual edits to generated files are lost.
    Post-write assertion: after the rename, the file must exist, be
        non-empty, have the requested mode and contain every required
        token. Any miss is a ``MaterializeError``.
    Owner: a user name resolved with :mod:`pwd`. The group is that user's
        primary group. ``None`` leaves ownership alone.

Related Modules:
    - :mod:`tigspine.provision.templates` — the assets written here
    - :mod:`tigspine.provision.steps` — chooses owner and modes per step

Tags:
    filesystem, idempotency, permissions, atomic-write
"""

from __future__ import annotations

import os
import pwd
import stat
import tempfile
from collections.abc import Iterable, Mapping
from pathlib import Path

from tigspine.core.errors import ErrorContext, MaterializeError
from tigspine.core.logging import get_logger
from tigspine.provision.templates import TemplateAsset

logger = get_logger(__name__)


def resolve_owner(owner: str | None) -> tuple[int, int] | None:
    """Map a user name to ``(uid, gid)``; ``None`` passes through."""
    if owner is None:
        return None
    try:
        entry = pwd.getpwnam(owner)
    except KeyError as exc:
        raise MaterializeError(
            f"Owner '{owner}' does not exist on this host", cause=exc
        ) from exc
    return entry.pw_uid, entry.pw_gid


class ResourceMaterializer:
    """Creates directories and writes files with defined ownership and mode."""

    def ensure_directory(
        self, path: Path, owner: str | None = None, mode: int = 0o755
    ) -> bool:
        """Create ``path`` (and parents) if needed, then apply owner and mode.

        Returns True when the directory did not exist before the call.

        Raises:
            MaterializeError: A non-directory is in the way, or creation,
                chmod or chown failed.
        """
        context = ErrorContext(path=str(path))
        if path.exists() and not path.is_dir():
            raise MaterializeError(f"{path} exists and is not a directory", context=context)

        created = not path.exists()
        try:
            path.mkdir(parents=True, exist_ok=True)
            os.chmod(path, mode)
            self._apply_owner(path, resolve_owner(owner))
        except OSError as exc:
            raise MaterializeError(
                f"Could not prepare directory {path}: {exc}", context=context, cause=exc
            ) from exc

        if created:
            logger.info("Created directory", path=str(path), mode=oct(mode))
        else:
            logger.debug("Directory already present", path=str(path))
        return created

    def write_file(
        self,
        path: Path,
        content: str,
        owner: str | None = None,
        mode: int = 0o644,
        required_tokens: Iterable[str] = (),
    ) -> Path:
        """Write ``content`` to ``path`` unconditionally and verify the result.

        Raises:
            MaterializeError: Writing failed or the post-write assertion
                did not hold.
        """
        context = ErrorContext(path=str(path))
        ids = resolve_owner(owner)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
            tmp = Path(tmp_name)
            try:
                os.fchmod(fd, mode)
                with os.fdopen(fd, "w", encoding="utf-8") as fh:
                    fh.write(content)
                self._apply_owner(tmp, ids)
                os.replace(tmp, path)
            except BaseException:
                tmp.unlink(missing_ok=True)
                raise
        except OSError as exc:
            raise MaterializeError(
                f"Could not write {path}: {exc}", context=context, cause=exc
            ) from exc

        self.verify_file(path, mode=mode, required_tokens=required_tokens)
        logger.debug("Wrote file", path=str(path), mode=oct(mode), size=len(content))
        return path

    def write_asset(
        self,
        root: Path,
        asset: TemplateAsset,
        values: Mapping[str, object] | None = None,
        owner: str | None = None,
        extra_tokens: Iterable[str] = (),
    ) -> Path:
        """Render ``asset`` with ``values`` and write it under ``root``."""
        content = asset.render(values)
        return self.write_file(
            root / asset.path,
            content,
            owner=owner,
            mode=asset.mode,
            required_tokens=(*asset.required_tokens, *extra_tokens),
        )

    @staticmethod
    def verify_file(
        path: Path, mode: int | None = None, required_tokens: Iterable[str] = ()
    ) -> None:
        """Post-write assertion: exists, non-empty, expected mode, all tokens present."""
        context = ErrorContext(path=str(path))
        if not path.is_file():
            raise MaterializeError(f"{path} was not created", context=context)
        info = path.stat()
        if info.st_size == 0:
            raise MaterializeError(f"{path} is empty", context=context)
        if mode is not None and stat.S_IMODE(info.st_mode) != mode:
            raise MaterializeError(
                f"{path} has mode {oct(stat.S_IMODE(info.st_mode))}, expected {oct(mode)}",
                context=context,
            )
        text = path.read_text(encoding="utf-8")
        missing = [token for token in required_tokens if token not in text]
        if missing:
            raise MaterializeError(
                f"{path} is missing required content: {', '.join(missing)}",
                context=context,
            )

    @staticmethod
    def _apply_owner(path: Path, ids: tuple[int, int] | None) -> None:
        if ids is None:
            return
        info = path.stat()
        if (info.st_uid, info.st_gid) != ids:
            os.chown(path, *ids)


__all__ = ["ResourceMaterializer", "resolve_owner"]
