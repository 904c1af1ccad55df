from __future__ import annotations

import json
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from dotenv import load_dotenv

from batch_audit.utils import env, normalize_address


DEFAULT_ENTITY_ID = "coffee-batch-001"

DEFAULT_CONTRACTS: Dict[str, str] = {
    "ActorRegistry": "0xFb451B3Bfb497C54719d0DB354a502a9D9cE38C1",
    "CidRollup": "0xC6d171F707bA43BdF490362a357D975B76976264",
    "DocumentRegistry": "0xBEb8140eeaf2f23916dA88F8F0886827a0f5145c",
    "ProcessManager": "0xeD7AA6c4B1fA3FFCEC378dcFEAc0406540F5078c",
}

CONTRACT_ENV: Dict[str, str] = {
    "ActorRegistry": "ACTOR_REGISTRY_ADDRESS",
    "CidRollup": "CID_ROLLUP_ADDRESS",
    "DocumentRegistry": "DOCUMENT_REGISTRY_ADDRESS",
    "ProcessManager": "PROCESS_MANAGER_ADDRESS",
}


class ConfigError(ValueError):
    pass


@dataclass
class Settings:
    primary_rpc: Optional[str]
    private_rpcs: List[str] = field(default_factory=list)
    public_rpcs: List[str] = field(default_factory=list)
    entity_id_input: str = DEFAULT_ENTITY_ID
    contracts: Dict[str, str] = field(default_factory=dict)

    @property
    def endpoints(self) -> List[str]:
        """Primary, then private, then public; first occurrence wins."""
        out: List[str] = []
        for url in [self.primary_rpc or ""] + self.private_rpcs + self.public_rpcs:
            u = url.strip()
            if u and u not in out:
                out.append(u)
        return out

    def require_endpoints(self) -> List[str]:
        urls = self.endpoints
        if not urls:
            raise ConfigError(
                "no query endpoint configured: set OP_SEPOLIA_RPC_URL (or OP_SEPOLIA_PRIVATE_RPCS_JSON / "
                "OP_SEPOLIA_PUBLIC_RPCS_JSON) in the environment or .env, or pass --rpc-url"
            )
        return urls


def load_env_file(env_file: Optional[Path] = None) -> bool:
    # Real environment variables take precedence over .env values.
    if env_file is not None:
        if not env_file.exists():
            raise ConfigError(f"env file not found: {env_file}")
        return load_dotenv(env_file, override=False)
    return load_dotenv(override=False)


def parse_rpc_list(name: str, raw: Optional[str]) -> List[str]:
    if raw is None or not raw.strip():
        return []
    try:
        parsed = json.loads(raw)
    except json.JSONDecodeError as e:
        raise ConfigError(f"failed to parse {name}: {e}") from e
    if not isinstance(parsed, list):
        raise ConfigError(f"{name} is not a JSON array")
    return [u.strip() for u in parsed if isinstance(u, str) and u.strip()]


def load_settings(env_file: Optional[Path] = None, *, use_dotenv: bool = True) -> Settings:
    if use_dotenv:
        load_env_file(env_file)

    contracts: Dict[str, str] = {}
    for name, var in CONTRACT_ENV.items():
        raw = env(var, DEFAULT_CONTRACTS[name])
        try:
            contracts[name] = normalize_address(raw)
        except ValueError as e:
            raise ConfigError(f"{var}: {e}") from e

    primary = os.getenv("OP_SEPOLIA_RPC_URL")
    return Settings(
        primary_rpc=primary.strip() if primary and primary.strip() else None,
        private_rpcs=parse_rpc_list("OP_SEPOLIA_PRIVATE_RPCS_JSON", os.getenv("OP_SEPOLIA_PRIVATE_RPCS_JSON")),
        public_rpcs=parse_rpc_list("OP_SEPOLIA_PUBLIC_RPCS_JSON", os.getenv("OP_SEPOLIA_PUBLIC_RPCS_JSON")),
        entity_id_input=env("AUDIT_PRODUCT_ID", DEFAULT_ENTITY_ID),
        contracts=contracts,
    )
