"""Locating the openvpn and xray binaries, unpacking bundled packages if needed."""

import logging
import os
import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Iterator

log = logging.getLogger(__name__)

PACKAGE_DIR = Path(__file__).resolve().parent / "embed"
LIB_MARKER = "libpkcs11-helper.so.1"


class BinaryNotFoundError(RuntimeError):
    """Raised when a required program cannot be found or unpacked."""


def _is_executable(path: Path) -> bool:
    return path.is_file() and os.access(path, os.X_OK)


def _packages() -> list[Path]:
    if not PACKAGE_DIR.is_dir():
        return []
    return sorted(p for p in PACKAGE_DIR.iterdir() if p.name.endswith(".deb") and p.is_file())


def _unpack(deb: Path, dest: Path) -> None:
    dest.mkdir(parents=True, exist_ok=True)
    try:
        result = subprocess.run(
            ["dpkg-deb", "-x", str(deb), str(dest)],
            stdout=subprocess.PIPE,
            stderr=subprocess.STDOUT,
            check=False,
        )
    except OSError as exc:
        log.warning("dpkg-deb %s: %s", deb.name, exc)
        return
    if result.returncode != 0:
        output = result.stdout.decode(errors="replace").strip()
        log.warning("dpkg-deb %s: exit status %d — %s", deb.name, result.returncode, output)


def _walk_files(root: Path) -> Iterator[Path]:
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames.sort()
        for name in sorted(filenames):
            path = Path(dirpath) / name
            if path.is_file():
                yield path


def _copy_file(src: Path, dest: Path, mode: int) -> None:
    dest.write_bytes(src.read_bytes())
    dest.chmod(mode)


def _copy_libs(root: Path, lib_dir: Path, prefixes: tuple) -> None:
    for path in _walk_files(root):
        if path.name.startswith(prefixes):
            try:
                _copy_file(path, lib_dir / path.name, 0o755)
            except OSError as exc:
                log.warning("copy %s: %s", path.name, exc)


def _extract_libs(lib_dir: Path) -> None:
    """Unpack the bundled pkcs11 helper libraries unless already present."""
    if (lib_dir / LIB_MARKER).exists():
        return
    with tempfile.TemporaryDirectory(prefix="vpnctl-lib-") as tmp:
        extract_dir = Path(tmp) / "x"
        for deb in _packages():
            if "libpkcs11" not in deb.name:
                continue
            _unpack(deb, extract_dir)
            _copy_libs(extract_dir, lib_dir, ("libpkcs11",))


def ensure_openvpn(data_dir) -> tuple[str, str]:
    """Path of the openvpn binary to use and the library directory for it.

    Prefers openvpn on PATH, then a previously unpacked copy in data_dir,
    then unpacks the bundled .deb packages.
    """
    base = Path(data_dir)
    lib_dir = base / "lib"
    cached = base / "openvpn"

    system = shutil.which("openvpn")
    if system:
        log.info("Using system openvpn: %s", system)
        lib_dir.mkdir(parents=True, exist_ok=True)
        _extract_libs(lib_dir)
        return system, str(lib_dir)

    if _is_executable(cached):
        log.info("Using cached openvpn: %s", cached)
        return str(cached), str(lib_dir)

    log.info("Extracting bundled OpenVPN packages…")
    with tempfile.TemporaryDirectory(prefix="vpnctl-extract-") as tmp:
        root = Path(tmp)
        for deb in _packages():
            _unpack(deb, root / f"x-{deb.name}")

        found = None
        for path in _walk_files(root):
            if path.name == "openvpn" and os.access(path, os.X_OK):
                found = path
        if found is None:
            raise BinaryNotFoundError(
                "openvpn binary not found in PATH or in the bundled packages"
            )

        try:
            _copy_file(found, cached, 0o755)
        except OSError as exc:
            raise BinaryNotFoundError(f"write openvpn: {exc}") from exc

        lib_dir.mkdir(parents=True, exist_ok=True)
        _copy_libs(root, lib_dir, ("libpkcs11", "libssl"))

    log.info("OpenVPN extracted to %s", cached)
    return str(cached), str(lib_dir)


def check_xray() -> None:
    """Raise BinaryNotFoundError unless xray is on PATH."""
    if shutil.which("xray") is None:
        raise BinaryNotFoundError("xray not found in PATH — install Xray-core")