import json
import logging

from pathlib import Path
from typing import Any, Dict, List, Set

import aiofiles

logger = logging.getLogger("ABI_Registry")

ABI_DIR = Path(__file__).parent / "abi"


class ABI_Registry:
    """Loads the workload contract ABIs and checks they expose the methods we call."""

    ABI_FILES: Dict[str, str] = {
        "load": "load_abi.json",
        "fund": "fund_abi.json",
    }
    REQUIRED_METHODS: Dict[str, Set[str]] = {
        "load": {"setArray"},
        "fund": {"transferTsscToMany"},
    }

    def __init__(self, abi_dir: Path = ABI_DIR):
        self.abi_dir: Path = abi_dir
        self.abis: Dict[str, List[Dict[str, Any]]] = {}

    async def load_abi(self, abi_type: str) -> List[Dict[str, Any]]:
        """Load and validate a single ABI, cached after the first call."""
        if abi_type in self.abis:
            return self.abis[abi_type]
        if abi_type not in self.ABI_FILES:
            raise ValueError(f"Unknown ABI type: {abi_type}")

        abi_path = self.abi_dir / self.ABI_FILES[abi_type]
        abi = await self._load_abi_from_path(abi_path, abi_type)
        self.abis[abi_type] = abi
        logger.debug(f"Loaded and validated {abi_type} ABI from {abi_path}")
        return abi

    async def _load_abi_from_path(self, abi_path: Path, abi_type: str) -> List[Dict[str, Any]]:
        """Loads and validates the ABI from a given path."""
        if not abi_path.exists():
            logger.error(f"ABI file not found: {abi_path}")
            raise FileNotFoundError(f"ABI file not found: {abi_path}")

        try:
            async with aiofiles.open(abi_path, "r", encoding="utf-8") as f:
                abi = json.loads(await f.read())
        except json.JSONDecodeError as e:
            logger.error(f"JSON decode error for {abi_type} in file {abi_path}: {e}")
            raise

        if not self._validate_abi(abi, abi_type):
            raise ValueError(f"Validation failed for {abi_type} ABI from file {abi_path}")
        return abi

    def _validate_abi(self, abi: Any, abi_type: str) -> bool:
        """Validate ABI structure and required methods."""
        if not isinstance(abi, list):
            logger.error(f"Invalid ABI format for {abi_type}")
            return False

        found_methods = {
            item.get("name") for item in abi
            if isinstance(item, dict) and item.get("type") == "function" and "name" in item
        }
        missing = self.REQUIRED_METHODS.get(abi_type, set()) - found_methods
        if missing:
            logger.error(f"Missing required methods in {abi_type} ABI: {missing}")
            return False
        return True
