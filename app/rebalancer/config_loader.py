"""
Config Loader module - engine settings, chain table and per-RPC Web3 instances
"""

import os
from typing import Any, Dict, List, Optional

import yaml
from web3 import Web3

DEFAULT_CONFIG_PATH = os.path.join(os.path.dirname(os.path.dirname(os.path.abspath(__file__))), "config.yaml")


class Web3Singleton:
    """
    Singleton class to manage w3 object creation per RPC URL
    """

    _instances = {}

    @staticmethod
    def get_instance(rpc_url: Optional[str] = None):
        """
        Set up a Web3 instance for the given RPC URL.
        Maintains separate instances per unique RPC URL.
        """

        if rpc_url not in Web3Singleton._instances:
            Web3Singleton._instances[rpc_url] = Web3(Web3.HTTPProvider(rpc_url))

        return Web3Singleton._instances[rpc_url]


def setup_w3(rpc_url: Optional[str] = None) -> Web3:
    """
    Get the Web3 instance from the singleton class

    Args:
        rpc_url (Optional[str]): RPC URL of the chain endpoint

    Returns:
        Web3: Web3 instance.
    """
    return Web3Singleton.get_instance(rpc_url)


class EngineConfig:
    """
    Engine Config object to access config variables.

    Global values are exposed as attributes; chain entries are reached through
    chain_settings() and the chain_* helpers.
    """

    required_env_vars = [
        "AUTOMATION_EOA",
        "AUTOMATION_PRIVATE_KEY",
        # "NOTIFICATION_URL",  # Optional
        # "BRIDGE_RELAY_URL",  # Optional
    ]

    def __init__(self, global_config: Dict[str, Any], chains_config: Dict[int, Dict[str, Any]], config_path: str = ""):
        self._global = global_config
        self._chains = {int(chain_id): settings for chain_id, settings in (chains_config or {}).items()}
        self.CONFIG_PATH = config_path

        # validate env
        self.validate()
        self.AUTOMATION_EOA = Web3.to_checksum_address(os.environ["AUTOMATION_EOA"])
        self.AUTOMATION_PRIVATE_KEY = os.environ["AUTOMATION_PRIVATE_KEY"]
        self.NOTIFICATION_URL = os.environ.get("NOTIFICATION_URL", "")
        self.BRIDGE_RELAY_URL = os.environ.get("BRIDGE_RELAY_URL", "")
        self.BRIDGE_RELAY_API_KEY = os.environ.get("BRIDGE_RELAY_API_KEY", "")

        slack_ids_raw = os.environ.get("SLACK_MENTION_IDS", "")
        self.SLACK_MENTION_IDS = [s.strip() for s in slack_ids_raw.split(",") if s.strip()]

        users_raw = os.environ.get("REBALANCER_USERS", "")
        self.USERS = [Web3.to_checksum_address(s.strip()) for s in users_raw.split(",") if s.strip()]

        self.OUTCOME_LOG_PATH = os.environ.get("OUTCOME_LOG_PATH", self._global.get("OUTCOME_LOG_PATH", "state/outcomes.jsonl"))
        self.STATE_PATH = os.environ.get("STATE_PATH", self._global.get("STATE_PATH", "state/engine_state.json"))

    def __getattr__(self, name: str) -> Any:
        """Look up config values in the global section."""
        if name.startswith("_"):
            raise AttributeError(name)
        if name in self._global:
            return self._global[name]
        raise AttributeError(f"Config has no attribute '{name}'")

    def get(self, name: str, default: Any = None) -> Any:
        return self._global.get(name, default)

    @property
    def chain_ids(self) -> List[int]:
        return list(self._chains.keys())

    def chain_settings(self, chain_id: int) -> Dict[str, Any]:
        if chain_id not in self._chains:
            raise ValueError(f"No configuration found for chain ID {chain_id}")
        return self._chains[chain_id]

    def chain_rpc_url(self, chain_id: int) -> Optional[str]:
        """RPC URL from the env var named by the chain's RPC_NAME, None when unset."""
        rpc_name = self.chain_settings(chain_id).get("RPC_NAME")
        if not rpc_name:
            return None
        return os.environ.get(rpc_name) or None

    def w3_for(self, chain_id: int) -> Web3:
        rpc_url = self.chain_rpc_url(chain_id)
        if not rpc_url:
            raise ValueError(f"Missing RPC URL for chain {chain_id}. Env var {self.chain_settings(chain_id).get('RPC_NAME')} not set")
        return setup_w3(rpc_url)

    def abi_path(self, name: str) -> str:
        abi_dir = self._global.get("ABI_DIR", "abis")
        if not os.path.isabs(abi_dir):
            abi_dir = os.path.join(os.path.dirname(os.path.abspath(__file__)), abi_dir)
        return os.path.join(abi_dir, name)

    def validate(self) -> None:
        """
        Validates that all required environment variables are set.
        Raises an error if any are missing.
        """
        missing_keys = [key for key in self.required_env_vars if not os.getenv(key)]
        if missing_keys:
            raise EnvironmentError(f"Missing required environment variables: {', '.join(missing_keys)}")


def load_config(config_path: Optional[str] = None) -> EngineConfig:
    config_path = config_path or os.environ.get("REBALANCER_CONFIG_PATH") or DEFAULT_CONFIG_PATH

    try:
        with open(config_path, "r", encoding="utf-8") as f:
            config = yaml.safe_load(f)
    except FileNotFoundError as exc:
        raise FileNotFoundError(f"Config file not found at {config_path}") from exc
    except yaml.YAMLError as e:
        raise ValueError(f"Error parsing YAML file: {e}") from e

    if not isinstance(config, dict) or "global" not in config:
        raise ValueError(f"Config file {config_path} has no 'global' section")

    return EngineConfig(global_config=config["global"], chains_config=config.get("chains") or {}, config_path=config_path)
