"""
ingestion/rpc/client.py

ChainReader: thin contract reads and log scans on top of the FallbackRouter.

Every public coroutine is one router operation, so a multi-field snapshot
(e.g. the eleven escrow getters) is read from a single provider at a single
block and rotates as a whole on failure.
"""
import asyncio
import dataclasses
import logging
from typing import Any, Dict, Iterable, List, Optional, Sequence

from hexbytes import HexBytes
from web3 import AsyncHTTPProvider, AsyncWeb3, Web3
from web3.exceptions import ContractLogicError

from ingestion.abi import (
    ESCROW_ABI,
    ESCROW_TOPICS,
    FREELANCER_FACTORY_ABI,
    FREELANCER_PROFILE_ABI,
    JOB_BOARD_ABI,
    JOB_BOARD_TOPICS,
)
from ingestion.normalize import ChainEvent
from lifecycle.interpreter import (
    direct_offer_fields,
    escrow_fields,
    job_fields,
    normalize_address,
    profile_fields,
    proposal_fields,
)

from .errors import RpcExhausted
from .failover import EndpointConfig, FallbackRouter

logger = logging.getLogger(__name__)

APPLICANT_PAGE_SIZE = 100
ESCROW_ADDRESS_BATCH = 50
_RANGE_TOO_LARGE = ("query returned more than", "too many", "block range", "range too large", "limit exceeded")

# log decoding is local; a provider-less Web3 never issues a request
_DECODER = Web3()


def web3_client_factory():
    """Default client factory: one AsyncWeb3 per endpoint."""
    def factory(endpoint: EndpointConfig) -> AsyncWeb3:
        return AsyncWeb3(AsyncHTTPProvider(endpoint.url))
    return factory


def _checksum(address: str) -> str:
    return Web3.to_checksum_address(address)


def _tag(block: Optional[int]):
    return "latest" if block is None else int(block)


def _is_range_error(exc: RpcExhausted) -> bool:
    return any(
        marker in f.error.lower()
        for f in exc.failures
        for marker in _RANGE_TOO_LARGE
    )


class ChainReader:
    """
    Contract reads used by the sync pipeline and the read fallback path.

    Snapshot methods return interpreter field dicts (or None when the entity
    does not exist on-chain) read at an explicit block.
    """

    def __init__(
        self,
        router: FallbackRouter,
        job_board_address: str,
        freelancer_factory_address: str = "",
        max_log_range: int = 2000,
    ):
        self.router = router
        self.job_board_address = job_board_address
        self.freelancer_factory_address = freelancer_factory_address
        self.max_log_range = max_log_range
        self._timestamps: Dict[int, int] = {}

    def _job_board(self, w3: AsyncWeb3):
        return w3.eth.contract(address=_checksum(self.job_board_address), abi=JOB_BOARD_ABI)

    # -- chain head ---------------------------------------------------------

    async def get_block_number(self) -> int:
        async def op(w3):
            return int(await w3.eth.block_number)
        return await self.router.execute_with_fallback(op, "eth_blockNumber")

    async def get_block_timestamp(self, block_number: int) -> int:
        if block_number in self._timestamps:
            return self._timestamps[block_number]

        async def op(w3):
            block = await w3.eth.get_block(block_number)
            return int(block["timestamp"])
        ts = await self.router.execute_with_fallback(op, f"eth_getBlockByNumber({block_number})")
        self._timestamps[block_number] = ts
        return ts

    async def get_sender(self, tx_hash: str) -> Optional[str]:
        async def op(w3):
            tx = await w3.eth.get_transaction(HexBytes(tx_hash))
            return tx["from"]
        return normalize_address(await self.router.execute_with_fallback(op, "eth_getTransactionByHash"))

    # -- logs ---------------------------------------------------------------

    async def _get_logs_range(
        self,
        addresses: Sequence[str],
        topics: Sequence[str],
        from_block: int,
        to_block: int,
    ) -> List[Dict[str, Any]]:
        logs: List[Dict[str, Any]] = []
        current = from_block
        batch_size = self.max_log_range
        checksummed = [_checksum(a) for a in addresses]

        while current <= to_block:
            batch_to = min(current + batch_size - 1, to_block)
            params = {
                "address": checksummed,
                "fromBlock": current,
                "toBlock": batch_to,
                "topics": [list(topics)],
            }

            async def op(w3, params=params):
                return list(await w3.eth.get_logs(params))

            try:
                batch = await self.router.execute_with_fallback(op, f"eth_getLogs({current}-{batch_to})")
            except RpcExhausted as e:
                if batch_size > 1 and _is_range_error(e):
                    batch_size = max(batch_size // 2, 1)
                    logger.warning(f"[chain_reader] get_logs too large ({current}-{batch_to}), batch size -> {batch_size}")
                    continue
                raise
            logs.extend(batch)
            current = batch_to + 1
        return sorted(logs, key=lambda x: (x["blockNumber"], x["logIndex"]))

    async def _decode(self, logs: Iterable[Dict[str, Any]], abi: List[Dict[str, Any]], topics: Dict[str, str]) -> List[ChainEvent]:
        by_topic = {t: name for name, t in topics.items()}
        contract = _DECODER.eth.contract(abi=abi)
        events: List[ChainEvent] = []
        for log in logs:
            name = by_topic.get(Web3.to_hex(log["topics"][0]))
            if name is None:
                continue
            decoded = getattr(contract.events, name)().process_log(log)
            block = int(decoded["blockNumber"])
            events.append(ChainEvent(
                name=name,
                args=dict(decoded["args"]),
                address=str(decoded["address"]).lower(),
                block_number=block,
                log_index=int(decoded["logIndex"]),
                tx_hash=Web3.to_hex(decoded["transactionHash"]),
                block_timestamp=await self.get_block_timestamp(block),
            ))
        return events

    async def get_job_board_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        logs = await self._get_logs_range(
            [self.job_board_address], list(JOB_BOARD_TOPICS.values()), from_block, to_block,
        )
        return await self._decode(logs, JOB_BOARD_ABI, JOB_BOARD_TOPICS)

    async def get_escrow_events(self, escrow_addresses: Sequence[str], from_block: int, to_block: int) -> List[ChainEvent]:
        addresses = sorted(set(a.lower() for a in escrow_addresses if a))
        logs: List[Dict[str, Any]] = []
        for i in range(0, len(addresses), ESCROW_ADDRESS_BATCH):
            logs.extend(await self._get_logs_range(
                addresses[i:i + ESCROW_ADDRESS_BATCH], list(ESCROW_TOPICS.values()), from_block, to_block,
            ))
        logs.sort(key=lambda x: (x["blockNumber"], x["logIndex"]))
        events = await self._decode(logs, ESCROW_ABI, ESCROW_TOPICS)

        resolved = []
        for event in events:
            if event.name == "DisputeRaised":
                event = dataclasses.replace(event, sender=await self.get_sender(event.tx_hash))
            resolved.append(event)
        return resolved

    # -- snapshots ----------------------------------------------------------

    async def get_next_job_id(self, block: Optional[int] = None) -> int:
        async def op(w3):
            return int(await self._job_board(w3).functions.nextJobId().call(block_identifier=_tag(block)))
        return await self.router.execute_with_fallback(op, "nextJobId")

    async def snapshot_job(self, job_id: int, block: Optional[int] = None) -> Optional[Dict[str, Any]]:
        async def op(w3):
            try:
                return await self._job_board(w3).functions.getJob(int(job_id)).call(block_identifier=_tag(block))
            except ContractLogicError:
                return None
        raw = await self.router.execute_with_fallback(op, f"getJob({job_id})")
        if raw is None or normalize_address(raw[0]) is None:
            return None
        fields = job_fields(raw)
        fields["job_id"] = int(job_id)
        return fields

    async def snapshot_escrow(self, address: str, block: Optional[int] = None) -> Dict[str, Any]:
        tag = _tag(block)

        async def op(w3):
            c = w3.eth.contract(address=_checksum(address), abi=ESCROW_ABI)
            f = c.functions
            names = [
                "client", "freelancer", "amount", "current_deadlines", "delivered", "disputed",
                "terminal", "cancel_requested_by", "last_delivery_uri", "last_dispute_uri", "deliveries",
            ]
            calls = [
                f.client(), f.freelancer(), f.amount(), f.currentDeadlines(), f.delivered(), f.disputed(),
                f.terminal(), f.cancelRequestedBy(), f.lastDeliveryURI(), f.lastDisputeURI(), f.getAllDeliveries(),
            ]
            values = await asyncio.gather(*(call.call(block_identifier=tag) for call in calls))
            return dict(zip(names, values))

        values = await self.router.execute_with_fallback(op, f"escrow({address})")
        return escrow_fields(values)

    async def get_applicants(self, job_id: int, block: Optional[int] = None) -> List[str]:
        tag = _tag(block)

        async def op(w3):
            board = self._job_board(w3)
            count = int(await board.functions.getApplicantCount(int(job_id)).call(block_identifier=tag))
            applicants: List[str] = []
            for offset in range(0, count, APPLICANT_PAGE_SIZE):
                page, _applied_at = await board.functions.getApplicants(
                    int(job_id), offset, APPLICANT_PAGE_SIZE,
                ).call(block_identifier=tag)
                applicants.extend(page)
            return applicants

        raw = await self.router.execute_with_fallback(op, f"getApplicants({job_id})")
        return [a for a in (normalize_address(x) for x in raw) if a]

    async def snapshot_proposal(self, job_id: int, freelancer: str, block: Optional[int] = None) -> Optional[Dict[str, Any]]:
        async def op(w3):
            return await self._job_board(w3).functions.getApplicantDetails(
                int(job_id), _checksum(freelancer),
            ).call(block_identifier=_tag(block))
        raw = await self.router.execute_with_fallback(op, f"getApplicantDetails({job_id})")
        return proposal_fields(raw)

    async def snapshot_direct_offer(self, job_id: int, block: Optional[int] = None) -> Optional[Dict[str, Any]]:
        async def op(w3):
            try:
                return await self._job_board(w3).functions.getDirectOffer(int(job_id)).call(block_identifier=_tag(block))
            except ContractLogicError:
                return None
        raw = await self.router.execute_with_fallback(op, f"getDirectOffer({job_id})")
        return direct_offer_fields(raw) if raw is not None else None

    async def snapshot_profile(self, wallet: str, block: Optional[int] = None) -> Optional[Dict[str, Any]]:
        if not self.freelancer_factory_address:
            return None
        tag = _tag(block)

        async def op(w3):
            factory = w3.eth.contract(address=_checksum(self.freelancer_factory_address), abi=FREELANCER_FACTORY_ABI)
            profile_address = await factory.functions.freelancerProfile(_checksum(wallet)).call(block_identifier=tag)
            if normalize_address(profile_address) is None:
                return None, {}
            p = w3.eth.contract(address=profile_address, abi=FREELANCER_PROFILE_ABI).functions
            names = [
                "hourly_rate", "bio", "skills", "portfolio_uri",
                "total_earned", "jobs_completed", "average_rating", "is_active",
            ]
            calls = [
                p.hourlyRate(), p.bio(), p.getSkills(), p.portfolioURI(),
                p.totalEarned(), p.jobsCompleted(), p.averageRating(), p.isActive(),
            ]
            values = await asyncio.gather(*(call.call(block_identifier=tag) for call in calls))
            return profile_address, dict(zip(names, values))

        profile_address, values = await self.router.execute_with_fallback(op, f"freelancerProfile({wallet})")
        if profile_address is None:
            return None
        return profile_fields(profile_address, values)
