from __future__ import annotations

import asyncio
import re

from .errors import ProfileLookupFailure
from .models import Profile, normalize_address


DEFAULT_ENS_RPC_URL = "https://ethereum.publicnode.com"
DEFAULT_ENS_RPC_URLS = [DEFAULT_ENS_RPC_URL, "https://eth.llamarpc.com"]
ENS_TIMEOUT_S = 10

_EVM_ADDRESS_RE = re.compile(r"^0x[0-9a-f]{40}$")


def is_evm_address(address: str) -> bool:
    return bool(_EVM_ADDRESS_RE.match(normalize_address(address)))


def reverse_resolve(address: str, rpc_urls: list[str]) -> tuple[str, str] | None:
    """Return (ens_name, avatar) for an EVM address, or None when it has no primary name."""

    from web3 import Web3

    checksum = Web3.to_checksum_address(address)
    last_error: Exception | None = None
    for rpc_url in rpc_urls:
        try:
            web3 = Web3(Web3.HTTPProvider(rpc_url, request_kwargs={"timeout": ENS_TIMEOUT_S}))
            if not web3.is_connected():
                last_error = RuntimeError(f"Unable to reach ENS RPC at {rpc_url}")
                continue
            name = web3.ens.name(checksum)
            if not name:
                return None
            # Reverse records are unauthenticated; require the forward record to agree.
            forward = web3.ens.address(name)
            if not forward or normalize_address(forward) != normalize_address(address):
                return None
            avatar = web3.ens.get_text(name, "avatar") or ""
            return name, avatar
        except Exception as exc:  # noqa: BLE001
            last_error = exc
    raise RuntimeError(f"ENS reverse lookup failed via {', '.join(rpc_urls)}: {last_error}")


class EnsProfileDirectory:
    """Profile directory backed by ENS primary names; only EVM-style addresses apply."""

    def __init__(self, rpc_urls: list[str] | tuple[str, ...] | None = None) -> None:
        self.rpc_urls = list(rpc_urls or DEFAULT_ENS_RPC_URLS)

    async def resolve_profile(self, address: str) -> Profile | None:
        cleaned = normalize_address(address)
        if not is_evm_address(cleaned):
            return None
        try:
            found = await asyncio.to_thread(reverse_resolve, cleaned, self.rpc_urls)
        except Exception as exc:  # noqa: BLE001
            raise ProfileLookupFailure(cleaned, str(exc)) from exc
        if found is None:
            return None
        name, avatar = found
        return Profile(address=cleaned, username=name, avatar_url=avatar)
