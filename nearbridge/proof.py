"""
Inclusion proofs for the lock event.

The proof bytes come from an external proof service and are passed to the
destination chain untouched; their layout is not interpreted here.
"""

from __future__ import annotations

from typing import Any

from nearbridge.chain import DestinationChain, ProofService, SourceChainReader
from nearbridge.observability import BridgeComponent, get_logger

logger = get_logger("proof", BridgeComponent.PROOF)


def parse_view_flag(result: Any) -> bool:
    """Destination view calls return raw bytes; the flag is the first byte."""
    if isinstance(result, bool):
        return result
    if isinstance(result, (bytes, bytearray, list, tuple)):
        return bool(result[0]) if len(result) else False
    return bool(result)


class ProofBuilder:
    def __init__(
        self,
        proof_service: ProofService,
        destination: DestinationChain,
        reader: SourceChainReader,
        contract_address: str,
        abi: str,
        event_name: str,
        evm_account: str,
        proof_used_method: str = "is_used_proof",
    ):
        self._service = proof_service
        self._destination = destination
        self._reader = reader
        self.contract_address = contract_address
        self.abi = abi
        self.event_name = event_name
        self.evm_account = evm_account
        self.proof_used_method = proof_used_method

    async def build(self, lock_tx_hash: str) -> bytes:
        proof = await self._service.build_proof(
            self.event_name,
            lock_tx_hash,
            self.contract_address,
            self.abi,
            self._reader,
        )
        logger.debug("Built inclusion proof", tx_hash=lock_tx_hash, size=len(proof))
        return bytes(proof)

    async def is_used(self, proof: bytes) -> bool:
        """Whether the destination chain already consumed ``proof`` (e.g. a relayer minted)."""
        result = await self._destination.view_function(self.evm_account, self.proof_used_method, proof)
        return parse_view_flag(result)
