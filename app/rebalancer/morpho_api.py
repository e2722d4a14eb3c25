"""
Curated-vault yield from the Morpho public GraphQL API.
"""

from app.rebalancer.decorators import make_api_post
from app.rebalancer.exceptions import ReadUnavailableError
from app.rebalancer.logging_config import setup_logger

logger = setup_logger()

MORPHO_API_URL = "https://api.morpho.org/graphql"

VAULT_APY_QUERY = """
query VaultApy($address: String!, $chainId: Int!) {
  vaultByAddress(address: $address, chainId: $chainId) {
    address
    symbol
    state {
      apy
      netApy
      totalAssetsUsd
    }
  }
}
"""


def fetch_vault_apy_bps(vault_address: str, chain_id: int, api_url: str = MORPHO_API_URL) -> int:
    """
    Fetch the current APY of a Morpho vault in basis points.

    The API returns apy as a fraction (0.05 for 5%).

    Raises:
        ReadUnavailableError: the API is unreachable, returns errors, or does not know the vault.
    """
    payload = {"query": VAULT_APY_QUERY, "variables": {"address": vault_address, "chainId": chain_id}}
    data = make_api_post(api_url, {"Content-Type": "application/json"}, payload)

    if data is None:
        raise ReadUnavailableError(f"Morpho API unreachable for vault {vault_address} on chain {chain_id}")
    if data.get("errors"):
        raise ReadUnavailableError(f"Morpho API errors for vault {vault_address}: {data['errors']}")

    vault = (data.get("data") or {}).get("vaultByAddress")
    if not vault or vault.get("state") is None:
        raise ReadUnavailableError(f"Vault {vault_address} not found on chain {chain_id}")

    apy_bps = round(float(vault["state"]["apy"]) * 10000)
    logger.debug("MorphoAPI: %s on chain %s apy %s bps", vault.get("symbol", vault_address), chain_id, apy_bps)
    return max(apy_bps, 0)
