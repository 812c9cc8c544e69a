"""Injection of jQuery into the built admin and client bundles.

The forum's admin bundle expects a global ``jQuery`` that the regular build
does not emit. :class:`AssetPatcher` prepends the library to the bundle
exactly once: a marker comment in the bundle content tells later launches
that the work is already done, so no sidecar state is needed and the result
survives container replacement together with the asset volume.
"""

from __future__ import annotations

import logging
import os
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import requests

from .errors import AssetPatchFailed
from .logging_utils import log_startup
from .util import first_existing

logger = logging.getLogger(__name__)

__all__ = [
    "PATCH_MARKER",
    "BundleGroup",
    "PatchReport",
    "AssetPatcher",
    "fetch_dependency",
    "is_patched",
]

PATCH_MARKER = "/* forum-launcher: jquery-injected */"
VENDOR_FILENAME = "jquery.min.js"
MIN_PAYLOAD_BYTES = 50_000
FETCH_TIMEOUT = 30


@dataclass(frozen=True)
class BundleGroup:
    name: str
    candidates: Sequence[str]
    required: bool = False

    @property
    def canonical(self) -> str:
        return f"{self.name}.min.js"


BUNDLE_GROUPS: tuple[BundleGroup, ...] = (
    BundleGroup("admin", ("admin.min.js", "admin.js", "scripts-admin.js"), required=True),
    BundleGroup("client", ("client.min.js", "client.js", "scripts-client.js")),
)


@dataclass
class PatchReport:
    patched: List[str] = field(default_factory=list)
    already_patched: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)


def is_patched(content: bytes) -> bool:
    return PATCH_MARKER.encode() in content


def fetch_dependency(url: str, timeout: float = FETCH_TIMEOUT) -> bytes:
    """Download the library and reject truncated responses."""

    resp = requests.get(url, timeout=timeout)
    resp.raise_for_status()
    payload = resp.content
    if len(payload) < MIN_PAYLOAD_BYTES:
        raise ValueError(f"download appears incomplete ({len(payload)} bytes)")
    return payload


def _render(payload: bytes, original: bytes, group: str) -> bytes:
    header = (
        f"{PATCH_MARKER}\n"
        f"/* jQuery for forum {group} scripts - MUST BE FIRST */\n"
    ).encode()
    glue = (
        b";\n\n"
        b"/* Ensure jQuery is globally available */\n"
        b"if (typeof window !== 'undefined') {\n"
        b"    window.jQuery = window.$ = jQuery;\n"
        b"}\n\n"
    )
    return header + payload + glue + original


class AssetPatcher:
    """Idempotently prepend the runtime dependency to the built bundles."""

    def __init__(
        self,
        asset_dir: Path,
        url: str,
        *,
        fetch: Callable[[str], bytes] = fetch_dependency,
        groups: Sequence[BundleGroup] = BUNDLE_GROUPS,
    ) -> None:
        self.asset_dir = asset_dir
        self.url = url
        self._fetch = fetch
        self.groups = tuple(groups)
        self._payload: Optional[bytes] = None

    @property
    def vendor_path(self) -> Path:
        return self.asset_dir / VENDOR_FILENAME

    def _targets(self) -> list[tuple[BundleGroup, Path]]:
        targets = []
        for group in self.groups:
            found = first_existing(self.asset_dir / name for name in group.candidates)
            if found is not None:
                # patch the bundle itself, not the canonical link pointing at it
                targets.append((group, found.resolve() if found.is_symlink() else found))
        return targets

    def _load_payload(self) -> bytes:
        """Return the library, preferring the vendored copy of a previous launch."""

        if self._payload is not None:
            return self._payload
        vendor = self.vendor_path
        if vendor.is_file():
            data = vendor.read_bytes()
            if len(data) >= MIN_PAYLOAD_BYTES:
                logger.info("Using stored %s (%d bytes)", vendor.name, len(data))
                self._payload = data
                return data
            logger.warning("Stored %s is truncated (%d bytes); downloading again", vendor.name, len(data))
        logger.info("Downloading jQuery from %s", self.url)
        data = self._fetch(self.url)
        logger.info("jQuery downloaded (%d bytes)", len(data))
        self._payload = data
        return data

    def _store_vendor(self, payload: bytes) -> None:
        vendor = self.vendor_path
        if vendor.is_file() and vendor.read_bytes() == payload:
            return
        vendor.write_bytes(payload)
        logger.info("Stored %s as standalone fallback", vendor.name)

    def _patch_file(self, group: BundleGroup, path: Path, payload: bytes) -> None:
        original = path.read_bytes()
        backup = path.with_name(path.name + ".backup")
        shutil.copyfile(path, backup)
        tmp = path.with_name(path.name + ".tmp")
        tmp.write_bytes(_render(payload, original, group.name))
        os.replace(tmp, path)
        logger.info("jQuery integrated at the beginning of %s (backup: %s)", path.name, backup.name)

    def _link_canonical(self, group: BundleGroup, path: Path) -> None:
        if path.name == group.canonical:
            return
        link = self.asset_dir / group.canonical
        target = path.name if path.parent.resolve() == self.asset_dir.resolve() else str(path)
        if link.is_symlink() and os.readlink(link) == target:
            return
        if link.exists() or link.is_symlink():
            link.unlink()
        link.symlink_to(target)
        logger.info("Created/updated %s -> %s", link.name, target)

    def patch(self) -> PatchReport:
        """Patch every target bundle that does not carry the marker yet.

        Raises :class:`AssetPatchFailed` when the asset directory or the
        required admin bundle is missing, or when the library cannot be
        obtained while the admin bundle is still unpatched.
        """

        report = PatchReport()
        if not self.asset_dir.is_dir():
            raise AssetPatchFailed(f"Asset directory {self.asset_dir} not found")

        targets = self._targets()
        present = {group.name for group, _ in targets}
        for group in self.groups:
            if group.required and group.name not in present:
                raise AssetPatchFailed(
                    f"No {group.name} bundle found in {self.asset_dir}",
                    [f"looked for: {', '.join(group.candidates)}"],
                )
            if group.name not in present:
                report.warnings.append(f"no {group.name} bundle found")

        pending = []
        for group, path in targets:
            if is_patched(path.read_bytes()):
                report.already_patched.append(path.name)
                self._link_canonical(group, path)
            else:
                pending.append((group, path))

        if not pending:
            logger.info("All bundles already carry jQuery; nothing to patch")
            return report

        try:
            payload = self._load_payload()
        except (requests.RequestException, ValueError, OSError) as exc:
            required_pending = [p.name for g, p in pending if g.required]
            if required_pending:
                log_startup(f"Asset patch failed: {exc}")
                raise AssetPatchFailed(
                    f"Failed to obtain jQuery: {exc}",
                    [f"unpatched bundle: {name}" for name in required_pending],
                ) from exc
            message = f"Failed to obtain jQuery ({exc}); leaving {', '.join(p.name for _, p in pending)} unpatched"
            logger.warning(message)
            report.warnings.append(message)
            return report

        self._store_vendor(payload)
        for group, path in pending:
            self._patch_file(group, path, payload)
            self._link_canonical(group, path)
            report.patched.append(path.name)

        log_startup(f"Asset patch: patched={report.patched} already={report.already_patched}")
        return report
