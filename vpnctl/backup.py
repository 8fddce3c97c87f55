"""Zip backups of the state file and the tunnel configs."""

import io
import zipfile
from datetime import date
from pathlib import Path, PurePosixPath
from typing import Optional


class BackupError(ValueError):
    """Raised when a backup archive cannot be read."""


def backup_filename(day: Optional[date] = None) -> str:
    """Download name of a backup taken on the given day (today by default)."""
    day = day or date.today()
    return f"vpnctl-backup-{day:%Y-%m-%d}.zip"


def create_backup(data_dir) -> bytes:
    """A zip archive holding state.json and every configs/*.ovpn file."""
    base = Path(data_dir)
    try:
        state_data = (base / "state.json").read_bytes()
    except OSError:
        state_data = b""

    buffer = io.BytesIO()
    with zipfile.ZipFile(buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        archive.writestr("state.json", state_data)
        try:
            entries = sorted((base / "configs").iterdir(), key=lambda p: p.name)
        except OSError:
            entries = []
        for entry in entries:
            if not entry.name.endswith(".ovpn"):
                continue
            try:
                data = entry.read_bytes()
            except OSError:
                continue
            archive.writestr(f"configs/{entry.name}", data)
    return buffer.getvalue()


def restore_backup(data_dir, data: bytes) -> list[str]:
    """Write state.json and .ovpn configs from a backup; returns the entries restored."""
    base = Path(data_dir)
    try:
        archive = zipfile.ZipFile(io.BytesIO(data))
    except (zipfile.BadZipFile, ValueError) as exc:
        raise BackupError("invalid zip") from exc

    restored = []
    with archive:
        for info in archive.infolist():
            name = info.filename
            if name == "state.json":
                target, mode = base / "state.json", 0o644
            elif name.startswith("configs/") and name.endswith(".ovpn"):
                target, mode = base / "configs" / PurePosixPath(name).name, 0o600
            else:
                continue
            try:
                content = archive.read(info)
            except (zipfile.BadZipFile, RuntimeError, NotImplementedError, OSError):
                continue
            try:
                target.parent.mkdir(parents=True, exist_ok=True)
                target.write_bytes(content)
                target.chmod(mode)
            except OSError:
                continue
            restored.append(name)
    return restored