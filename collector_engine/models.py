"""
Data models for collector-engine.

Wire models for the control plane responses, and the records the
container process mapper produces.
"""

from dataclasses import dataclass
from typing import List, Optional, Union
from urllib.parse import parse_qs, urlparse

from pydantic import BaseModel, Field

NEW_VERSION_AVAILABLE = "new_version_available"


class PingResponse(BaseModel):
    """Body of a 200 response from the ping endpoint."""

    status: Optional[str] = Field(None, description="e.g. new_version_available")
    configuration_version: Optional[str] = Field(
        None, description="Version to fetch when a new one is available"
    )

    @property
    def new_version_available(self) -> bool:
        return self.status == NEW_VERSION_AVAILABLE and bool(self.configuration_version)


class ManifestFile(BaseModel):
    """One downloadable file in a configuration manifest."""

    path: str = Field(..., description="Remote path, appended to the base URL")
    name: Optional[str] = Field(None, description="Destination filename in the staging directory")

    @classmethod
    def from_entry(cls, entry: Union[dict, str]) -> "ManifestFile":
        """
        Build from a manifest entry.

        Entries are either {"path": ..., "name": ...} objects or bare
        paths carrying the filename in a ``file`` query parameter.
        """
        if isinstance(entry, dict):
            return cls(path=str(entry.get("path") or ""), name=entry.get("name"))
        query = parse_qs(urlparse(str(entry)).query)
        names = query.get("file")
        return cls(path=str(entry), name=names[0] if names else None)


class ConfigurationManifest(BaseModel):
    """Body of a 200 response from the configuration endpoint."""

    files: List[Union[dict, str]] = Field(default_factory=list)

    def manifest_files(self) -> List[ManifestFile]:
        return [ManifestFile.from_entry(entry) for entry in self.files]


@dataclass(frozen=True)
class ContainerInfo:
    """Identity of a container, shared by every PID that belongs to it."""

    name: str
    short_id: str
    image: str
