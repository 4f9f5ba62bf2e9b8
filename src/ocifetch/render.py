"""Render a container image filesystem from its layers.

Layers are gzip-compressed tar archives applied lowest first. Each layer is
extracted into the target directory, then its whiteout markers are applied:

- ``.wh.<name>`` removes ``<name>`` inherited from lower layers
- ``.wh..wh..opq`` makes its directory opaque: everything inherited from
  lower layers is removed, entries introduced by the same layer stay

Image format: https://github.com/moby/moby/blob/v17.05.0-ce/image/spec/v1.md
"""

from pathlib import Path
from typing import BinaryIO, Iterable, Iterator, List, Optional, Sequence, Set, Tuple, Union
import errno
import io
import logging
import os
import posixpath
import shutil
import tarfile
import zlib

from .constants import OPAQUE_WHITEOUT, WHITEOUT_PREFIX
from .errors import RenderIOError, WrongTargetPathError

logger = logging.getLogger(__name__)

_XATTR_PAX_PREFIX = "SCHILY.xattr."

# xattrs the filesystem or our privileges won't take are skipped
_XATTR_SKIP_ERRNOS = {errno.EPERM, errno.EACCES, errno.ENOTSUP, errno.EOPNOTSUPP}


def unpack(layers: Sequence[bytes], target_dir: Path) -> None:
    """Unpack an ordered list of layers to a target directory.

    Layers must be provided as gzip-compressed tar archives, with lower layers
    coming first. Target directory must be an existing absolute path.

    Raises:
        WrongTargetPathError: If target_dir is not an existing absolute directory
        RenderIOError: On any decompression, extraction or whiteout failure
    """
    target = _check_target(target_dir)
    for index, layer in enumerate(layers):
        _apply_layer(io.BytesIO(layer), target, index)


def unpack_files(paths: Iterable[Union[str, Path]], target_dir: Path) -> None:
    """Same as unpack(), reading each layer from a file."""
    target = _check_target(target_dir)
    for index, path in enumerate(paths):
        try:
            fh = open(path, "rb")
        except OSError as e:
            raise RenderIOError(f"cannot open layer {path}: {e}") from e
        with fh:
            _apply_layer(fh, target, index)


def unpack_partial(layers: Sequence[bytes], target_dir: Path, prefix: str) -> None:
    """Unpack only the entries lying under prefix (e.g. "etc" or "usr/share").

    Entries keep their full path below target_dir. Whiteouts that remove the
    prefix or one of its ancestors apply to the prefix subtree; other
    whiteouts outside the prefix are ignored.
    """
    target = _check_target(target_dir)
    norm = _normalize(prefix)
    if norm is None:
        raise ValueError(f"prefix escapes the image root: {prefix!r}")
    for index, layer in enumerate(layers):
        _apply_layer(io.BytesIO(layer), target, index, prefix=norm)


# ============= Layer application =============

def _check_target(target_dir: Path) -> Path:
    target = Path(target_dir)
    if not target.is_absolute() or not target.is_dir():
        raise WrongTargetPathError(target)
    return target


def _apply_layer(
    fileobj: BinaryIO,
    target: Path,
    index: int,
    prefix: Optional[str] = None,
) -> None:
    logger.debug("Applying layer %d to %s", index, target)
    try:
        with tarfile.open(fileobj=fileobj, mode="r:gz") as tar:
            introduced, whiteouts, xattrs = _extract_layer(tar, target, prefix)
        _apply_xattrs(target, xattrs)
        _apply_whiteouts(target, whiteouts, introduced, prefix)
    except (OSError, EOFError, zlib.error, tarfile.TarError) as e:
        raise RenderIOError(f"failed to apply layer {index}: {e}") from e


def _extract_layer(
    tar: tarfile.TarFile,
    target: Path,
    prefix: Optional[str],
) -> Tuple[Set[str], List[str], List[Tuple[str, dict]]]:
    """Extract every entry; return introduced paths, whiteout markers and xattrs."""
    introduced: Set[str] = set()
    whiteouts: List[str] = []
    xattrs: List[Tuple[str, dict]] = []
    target_real = os.path.realpath(target)

    def members() -> Iterator[tarfile.TarInfo]:
        for member in tar:
            name = _normalize(member.name)
            if name is None:
                raise RenderIOError(f"entry escapes the target directory: {member.name}")
            if not name:
                continue
            if prefix and not _is_under(name, prefix):
                if _masks_prefix(name, prefix):
                    whiteouts.append(name)
                continue
            if (member.ischr() or member.isblk()) and not _is_root():
                logger.warning("Skipping device node %s (requires root)", name)
                continue

            _mark_introduced(introduced, name)
            if posixpath.basename(name).startswith(WHITEOUT_PREFIX):
                whiteouts.append(name)
            attrs = {
                k[len(_XATTR_PAX_PREFIX):]: v
                for k, v in member.pax_headers.items()
                if k.startswith(_XATTR_PAX_PREFIX)
            }
            if attrs:
                xattrs.append((name, attrs))

            _clear_conflict(target / name, member, target_real)
            yield member

    tar.extractall(path=target, members=members(), numeric_owner=True, filter=_layer_filter)
    return introduced, whiteouts, xattrs


def _layer_filter(member: tarfile.TarInfo, dest_path: str) -> Optional[tarfile.TarInfo]:
    """Refuse entries escaping dest_path but keep the full permission bits."""
    filtered = tarfile.tar_filter(member, dest_path)
    if filtered is None:
        return None
    return filtered.replace(mode=member.mode, deep=False)


def _clear_conflict(path: Path, member: tarfile.TarInfo, target_real: str) -> None:
    """Remove an existing path that the entry cannot be written over."""
    if not os.path.lexists(path):
        return
    # Never touch anything reached through a symlink leading outside
    if not _is_inside(target_real, os.path.realpath(path.parent)):
        return
    if member.isdir() and path.is_dir() and not path.is_symlink():
        return
    _remove_path(path)


def _apply_xattrs(target: Path, xattrs: List[Tuple[str, dict]]) -> None:
    if not xattrs:
        return
    if not hasattr(os, "setxattr"):
        logger.warning("Extended attributes not supported on this platform, skipping")
        return
    for name, attrs in xattrs:
        path = target / name
        for key, value in attrs.items():
            if isinstance(value, str):
                value = value.encode("utf-8", "surrogateescape")
            try:
                os.setxattr(path, key, value, follow_symlinks=False)
            except OSError as e:
                if e.errno not in _XATTR_SKIP_ERRNOS:
                    raise
                logger.warning("Could not set xattr %s on %s: %s", key, name, e)


# ============= Whiteouts =============

def _apply_whiteouts(
    target: Path,
    whiteouts: List[str],
    introduced: Set[str],
    prefix: Optional[str] = None,
) -> None:
    for name in whiteouts:
        parent, marker = posixpath.split(name)
        if prefix and not _is_under(name, prefix):
            _mask_prefix(target, prefix, marker == OPAQUE_WHITEOUT, introduced)
            continue
        parent_path = target / parent if parent else target

        if marker == OPAQUE_WHITEOUT:
            logger.debug("Opaque whiteout in /%s", parent)
            _clear_opaque(target, parent, introduced)
        else:
            real_path = parent_path / marker[len(WHITEOUT_PREFIX):]
            if os.path.lexists(real_path):
                _remove_path(real_path)
            else:
                logger.warning("Whiteout %s has nothing to remove", name)

        # Remove whiteout place-holder
        placeholder = parent_path / marker
        if os.path.lexists(placeholder):
            _remove_path(placeholder)


def _clear_opaque(target: Path, rel_dir: str, introduced: Set[str]) -> None:
    """Remove everything under rel_dir that this layer did not introduce."""
    base = target / rel_dir if rel_dir else target
    if base.is_symlink() or not base.is_dir():
        return
    for child in list(base.iterdir()):
        rel = posixpath.join(rel_dir, child.name) if rel_dir else child.name
        if rel not in introduced:
            _remove_path(child)
        elif child.is_dir() and not child.is_symlink():
            _clear_opaque(target, rel, introduced)


def _masks_prefix(name: str, prefix: str) -> bool:
    """Whether a whiteout marker outside prefix removes prefix or an ancestor."""
    parent, marker = posixpath.split(name)
    if not marker.startswith(WHITEOUT_PREFIX):
        return False
    if marker == OPAQUE_WHITEOUT:
        masked = parent
    else:
        masked = posixpath.join(parent, marker[len(WHITEOUT_PREFIX):])
    return masked == "" or _is_under(prefix, masked)


def _mask_prefix(target: Path, prefix: str, opaque: bool, introduced: Set[str]) -> None:
    """Apply a whiteout covering the prefix, clipped to the prefix subtree."""
    path = target / prefix
    if not _is_inside(os.path.realpath(target), os.path.realpath(path.parent)):
        return
    logger.debug("Whiteout masks /%s", prefix)
    if opaque and prefix in introduced:
        _clear_opaque(target, prefix, introduced)
    elif os.path.lexists(path):
        _remove_path(path)


# ============= Path helpers =============

def _normalize(name: str) -> Optional[str]:
    """Archive path relative to the image root; "" for the root, None if it escapes."""
    norm = posixpath.normpath(name.lstrip("/"))
    if norm == ".":
        return ""
    if norm == ".." or norm.startswith("../"):
        return None
    return norm


def _is_under(name: str, prefix: str) -> bool:
    return name == prefix or name.startswith(prefix + "/")


def _mark_introduced(introduced: Set[str], name: str) -> None:
    while name and name not in introduced:
        introduced.add(name)
        name = posixpath.dirname(name)


def _is_inside(root: str, path: str) -> bool:
    return path == root or path.startswith(root.rstrip(os.sep) + os.sep)


def _is_root() -> bool:
    return hasattr(os, "geteuid") and os.geteuid() == 0


def _remove_path(path: Path) -> None:
    if path.is_symlink() or not path.is_dir():
        path.unlink()
    else:
        shutil.rmtree(path)


__all__ = ["unpack", "unpack_files", "unpack_partial"]
