# src/nixiform/config/models.py

import shlex
from pathlib import Path
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator


class NixiformConfig(BaseModel):
    """Run-wide settings. Built once at startup and passed to every component."""

    model_config = ConfigDict(frozen=True, extra="forbid")

    # Flake reference evaluated for node configurations
    source: str = "."
    nix_flags: List[str] = Field(default_factory=list)

    # Remote channel
    ssh_user: str = "root"
    ssh_port: int = 22
    ssh_key_path: Optional[Path] = None
    ssh_opts: List[str] = Field(default_factory=list)
    connect_timeout: float = 15.0

    # Execution
    jobs: int = Field(default=1, ge=1)
    debug: bool = False

    # Local state (inventory snapshot + generated node modules)
    work_dir: Path = Path(".nixiform")

    @field_validator("nix_flags", "ssh_opts", mode="before")
    @classmethod
    def _split_words(cls, value):
        # Environment variables arrive as a single string
        if isinstance(value, str):
            return shlex.split(value)
        return value

    @property
    def input_file(self) -> Path:
        return self.work_dir / "input.json"

    @property
    def known_hosts_file(self) -> Path:
        return self.work_dir / "known_hosts"

    def module_file(self, node_name: str) -> Path:
        return self.work_dir / f"{node_name}.nix"
