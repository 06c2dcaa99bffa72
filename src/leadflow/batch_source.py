from __future__ import annotations

import csv
import fnmatch
import io
import posixpath
import socket
import stat
from dataclasses import dataclass
from pathlib import Path
from typing import Protocol

import pandas as pd
import paramiko

from .config import BatchSourceConfig
from .errors import BatchSourceError


@dataclass(frozen=True)
class RemoteFile:
    name: str
    size: int


class BatchSource(Protocol):
    def __enter__(self) -> BatchSource: ...

    def __exit__(self, *exc_info: object) -> None: ...

    def list_files(self) -> list[RemoteFile]: ...

    def read(self, name: str) -> bytes: ...


class DirectoryBatchSource:
    """Local drop directory, used for manual imports and in tests."""

    def __init__(self, path: Path, pattern: str = "*.csv") -> None:
        self.path = Path(path)
        self.pattern = pattern

    def __enter__(self) -> DirectoryBatchSource:
        if not self.path.is_dir():
            raise BatchSourceError(f"batch directory not found: {self.path}")
        return self

    def __exit__(self, *exc_info: object) -> None:
        return None

    def list_files(self) -> list[RemoteFile]:
        try:
            entries = sorted(p for p in self.path.iterdir() if p.is_file())
        except OSError as exc:
            raise BatchSourceError(f"cannot list {self.path}: {exc}") from exc
        return [
            RemoteFile(name=p.name, size=p.stat().st_size)
            for p in entries
            if fnmatch.fnmatch(p.name, self.pattern)
        ]

    def read(self, name: str) -> bytes:
        try:
            return (self.path / name).read_bytes()
        except OSError as exc:
            raise BatchSourceError(f"cannot read {name}: {exc}") from exc


class SftpBatchSource:
    def __init__(self, cfg: BatchSourceConfig) -> None:
        self.cfg = cfg
        self._transport: paramiko.Transport | None = None
        self._sftp: paramiko.SFTPClient | None = None

    def __enter__(self) -> SftpBatchSource:
        self.connect()
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def connect(self) -> None:
        if not self.cfg.sftp_configured:
            raise BatchSourceError("sftp source is not configured", retryable=False)
        timeout = self.cfg.timeout_seconds
        try:
            sock = socket.create_connection((self.cfg.host, self.cfg.port), timeout=timeout)
            transport = paramiko.Transport(sock)
            transport.banner_timeout = timeout
            transport.auth_timeout = timeout
            transport.connect(username=self.cfg.user, password=self.cfg.password)
            sftp = paramiko.SFTPClient.from_transport(transport)
            if sftp is None:
                raise BatchSourceError("sftp subsystem unavailable")
            sftp.get_channel().settimeout(timeout)
        except BatchSourceError:
            self.close()
            raise
        except (OSError, paramiko.SSHException) as exc:
            self.close()
            raise BatchSourceError(f"sftp connect to {self.cfg.host}:{self.cfg.port} failed: {exc}") from exc
        self._transport = transport
        self._sftp = sftp

    def close(self) -> None:
        if self._sftp is not None:
            self._sftp.close()
            self._sftp = None
        if self._transport is not None:
            self._transport.close()
            self._transport = None

    def list_files(self) -> list[RemoteFile]:
        sftp = self._require()
        try:
            entries = sftp.listdir_attr(self.cfg.remote_dir)
        except (OSError, paramiko.SSHException) as exc:
            raise BatchSourceError(f"cannot list {self.cfg.remote_dir}: {exc}") from exc
        files = [
            RemoteFile(name=e.filename, size=int(e.st_size or 0))
            for e in entries
            if e.st_mode is not None and stat.S_ISREG(e.st_mode) and fnmatch.fnmatch(e.filename, self.cfg.file_pattern)
        ]
        return sorted(files, key=lambda f: f.name)

    def read(self, name: str) -> bytes:
        sftp = self._require()
        buffer = io.BytesIO()
        try:
            sftp.getfo(posixpath.join(self.cfg.remote_dir, name), buffer)
        except (OSError, paramiko.SSHException) as exc:
            raise BatchSourceError(f"cannot download {name}: {exc}") from exc
        return buffer.getvalue()

    def _require(self) -> paramiko.SFTPClient:
        if self._sftp is None:
            raise BatchSourceError("sftp source is not connected")
        return self._sftp


def source_from_config(cfg: BatchSourceConfig) -> BatchSource | None:
    if cfg.sftp_configured:
        return SftpBatchSource(cfg)
    if cfg.local_dir:
        return DirectoryBatchSource(Path(cfg.local_dir), cfg.file_pattern)
    return None


DELIMITERS = ",;\t|"


def sniff_delimiter(text: str) -> str:
    header = text.lstrip().splitlines()[0]
    try:
        return csv.Sniffer().sniff(header, delimiters=DELIMITERS).delimiter
    except csv.Error:
        # single-column file
        return ","


def _read_frame(text: str, sep: str) -> pd.DataFrame:
    return pd.read_csv(
        io.StringIO(text),
        sep=sep,
        dtype=str,
        keep_default_na=False,
        skip_blank_lines=True,
    )


def parse_delimited(data: bytes) -> list[dict[str, str]]:
    # Every cell stays a string so normalization sees the raw text.
    text = data.decode("utf-8-sig")
    if not text.strip():
        return []
    df = _read_frame(text, sniff_delimiter(text))
    df.columns = [str(c).strip() for c in df.columns]
    return df.to_dict(orient="records")
