"""Configuration management for the VaultLift CLI."""

import dataclasses
import json
import shutil
import tempfile
from pathlib import Path
from typing import List, Optional

from common.constants import DEFAULT_NODE_CAPACITY_BYTES, PRIMARY_NODE_ID
from common.logging_config import get_logger
from uploader.config import PRIMARY_NODE_ENDPOINT, PRIMARY_NODE_KEY, STATE_FILE_PATH, UploadSettings
from uploader.models import StorageNode

logger = get_logger(__name__)


class Config:
    """Manages CLI configuration stored in a JSON file."""

    DEFAULT_CONFIG = {
        "primary_endpoint": PRIMARY_NODE_ENDPOINT,
        "primary_key": PRIMARY_NODE_KEY,
        "primary_capacity": DEFAULT_NODE_CAPACITY_BYTES,
        "token": None,
        "user_id": None,
        "state_file": STATE_FILE_PATH,
        "nodes": [],
        "upload": {},
    }

    def __init__(self, config_path: Path):
        """
        Initialize configuration manager.

        Args:
            config_path: Path to config JSON file (typically ~/.vaultlift/config.json)
        """
        self.config_path = Path(config_path)
        self.data = self._load()

    def _defaults(self) -> dict:
        return json.loads(json.dumps(self.DEFAULT_CONFIG))

    def _load(self) -> dict:
        """
        Load configuration from file, creating defaults if necessary.

        Returns:
            Configuration dictionary
        """
        try:
            self.config_path.parent.mkdir(parents=True, exist_ok=True)
        except PermissionError:
            self.config_path = Path(tempfile.gettempdir()) / '.vaultlift' / 'config.json'
            self.config_path.parent.mkdir(parents=True, exist_ok=True)

        if self.config_path.exists():
            try:
                with open(self.config_path, 'r') as f:
                    data = json.load(f)
                if not isinstance(data, dict):
                    raise ValueError("config root must be an object")
                config = self._defaults()
                config.update(data)
                return config
            except (json.JSONDecodeError, ValueError, OSError) as e:
                backup_path = self.config_path.with_suffix('.json.bak')
                logger.warning(f"Corrupt config at {self.config_path} ({e}), backing up to {backup_path}")
                try:
                    shutil.copy(self.config_path, backup_path)
                except OSError as copy_error:
                    logger.warning(f"Could not back up config: {copy_error}")
                return self._defaults()
        else:
            config = self._defaults()
            try:
                with open(self.config_path, 'w') as f:
                    json.dump(config, f, indent=2)
            except OSError as e:
                logger.warning(f"Could not write default config to {self.config_path}: {e}")
            return config

    def save(self) -> None:
        """Save current configuration to file."""
        try:
            with open(self.config_path, 'w') as f:
                json.dump(self.data, f, indent=2)
        except OSError as e:
            logger.warning(f"Could not save config to {self.config_path}: {e}")

    def get_token(self) -> Optional[str]:
        """
        Get stored bearer token.

        Returns:
            Token string or None if not set
        """
        return self.data.get('token')

    def set_token(self, token: Optional[str]) -> None:
        self.data['token'] = token
        self.save()

    def get_user_id(self) -> Optional[str]:
        return self.data.get('user_id')

    def get_state_file(self) -> Path:
        return Path(self.data.get('state_file') or STATE_FILE_PATH).expanduser()

    def primary_node(self) -> StorageNode:
        return StorageNode(
            id=PRIMARY_NODE_ID,
            name="Primary",
            endpoint=str(self.data.get('primary_endpoint') or PRIMARY_NODE_ENDPOINT).rstrip('/'),
            credential=self.data.get('primary_key') or '',
            capacity=int(self.data.get('primary_capacity') or DEFAULT_NODE_CAPACITY_BYTES),
            priority=0,
            status="online",
        )

    def get_nodes(self) -> List[StorageNode]:
        """
        All configured storage nodes.

        Returns:
            The primary node first, then the extra nodes in the order they were added
        """
        nodes = [self.primary_node()]
        for entry in self.data.get('nodes', []):
            try:
                node = StorageNode.from_dict(entry)
            except (KeyError, TypeError, ValueError) as e:
                logger.warning(f"Skipping invalid node entry {entry!r}: {e}")
                continue
            if node.id == PRIMARY_NODE_ID:
                continue
            if node.status == "checking":
                node.status = "online"
            nodes.append(node)
        return nodes

    def add_node(self, node: StorageNode) -> None:
        """
        Add or replace an extra node and save.

        Raises:
            ValueError: If the id is reserved for the primary node
        """
        if node.id == PRIMARY_NODE_ID:
            raise ValueError(f"'{PRIMARY_NODE_ID}' is reserved for the primary node")
        nodes = [n for n in self.data.get('nodes', []) if n.get('id') != node.id]
        nodes.append(node.to_dict())
        self.data['nodes'] = nodes
        self.save()

    def remove_node(self, node_id: str) -> bool:
        nodes = self.data.get('nodes', [])
        remaining = [n for n in nodes if n.get('id') != node_id]
        if len(remaining) == len(nodes):
            return False
        self.data['nodes'] = remaining
        self.save()
        return True

    def get_upload_settings(self) -> UploadSettings:
        """
        Engine settings: VAULTLIFT_* environment variables, then the config's "upload" overrides.

        Raises:
            ValueError: If an override names an unknown setting or produces invalid bounds
        """
        settings = UploadSettings.from_env()
        overrides = self.data.get('upload') or {}
        known = {f.name for f in dataclasses.fields(UploadSettings)}
        unknown = set(overrides) - known
        if unknown:
            raise ValueError(f"Unknown upload setting(s) in config: {', '.join(sorted(unknown))}")
        return dataclasses.replace(settings, **overrides)
