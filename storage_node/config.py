"""Configuration settings for the reference storage node."""

import os
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

NODE_HOST = os.environ.get("VAULTLIFT_NODE_HOST", "0.0.0.0")

NODE_PORT = int(os.environ.get("VAULTLIFT_NODE_PORT", "4000"))

NODE_DATA_DIR = os.environ.get("VAULTLIFT_NODE_DATA_DIR", "./storage")

NODE_API_KEY = os.environ.get("VAULTLIFT_NODE_API_KEY", "")

NODE_CAPACITY_BYTES = int(os.environ.get("VAULTLIFT_NODE_CAPACITY_BYTES", "0"))

NODE_VERSION = "1.0.0"

CHUNKS_DIR_NAME = ".chunks"


@dataclass
class NodeSettings:
    """
    Runtime settings of one node.

    capacity_bytes of 0 means "report the disk's real size".
    An empty api_key disables the X-Node-Key check (bearer is still required).
    """
    data_dir: Path
    api_key: str = ''
    capacity_bytes: int = 0

    @classmethod
    def from_env(cls, data_dir: Optional[str] = None) -> 'NodeSettings':
        return cls(
            data_dir=Path(data_dir or NODE_DATA_DIR),
            api_key=NODE_API_KEY,
            capacity_bytes=NODE_CAPACITY_BYTES,
        )
