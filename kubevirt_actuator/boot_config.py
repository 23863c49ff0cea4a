"""Boot-time configuration (ignition) documents.

The document is kept as the decoded JSON object so that fields this package
knows nothing about survive a parse/inject/serialize round trip in their
original order. Only the ``storage.files`` path is interpreted, and its shape
is checked before anything is written to it.
"""

import json
from typing import Any

from kubevirt_actuator.errors import InvalidMachineConfiguration


HOSTNAME_PATH = "/etc/hostname"
HOSTNAME_FILE_MODE = 0o644


class BootConfig:
    def __init__(self, document: dict[str, Any]):
        self.document = document

    @classmethod
    def parse(cls, raw: bytes | str) -> "BootConfig":
        try:
            document = json.loads(raw)
        except (TypeError, ValueError) as exc:
            raise InvalidMachineConfiguration(
                "boot config is not valid JSON: %s", exc
            ) from exc
        if not isinstance(document, dict):
            raise InvalidMachineConfiguration(
                "boot config must be a JSON object, got %s", type(document).__name__
            )
        return cls(document)

    def _files(self) -> list[Any]:
        storage = self.document.setdefault("storage", {})
        if not isinstance(storage, dict):
            raise InvalidMachineConfiguration("boot config field 'storage' must be an object")
        files = storage.setdefault("files", [])
        if not isinstance(files, list):
            raise InvalidMachineConfiguration(
                "boot config field 'storage.files' must be a list"
            )
        return files

    def set_hostname(self, hostname: str) -> "BootConfig":
        entry = {
            "contents": {"source": f"data:,{hostname}"},
            "filesystem": "root",
            "mode": HOSTNAME_FILE_MODE,
            "path": HOSTNAME_PATH,
        }
        files = self._files()
        for index, existing in enumerate(files):
            if (
                isinstance(existing, dict)
                and existing.get("path") == HOSTNAME_PATH
                and existing.get("filesystem", "root") == "root"
            ):
                files[index] = entry
                return self
        files.append(entry)
        return self

    def serialize(self) -> bytes:
        return json.dumps(self.document, separators=(",", ":")).encode("utf-8")


def add_hostname_to_user_data(user_data: bytes | str, hostname: str) -> bytes:
    return BootConfig.parse(user_data).set_hostname(hostname).serialize()
