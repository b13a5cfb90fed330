"""In-memory stand-ins for the chain and the RPC providers."""
from __future__ import annotations

import asyncio
import copy
from typing import Any, Dict, List, Optional, Sequence, Tuple

from ingestion.normalize import ChainEvent
from lifecycle.interpreter import escrow_fields, job_fields
from lifecycle.models import JobStatus

JOB_BOARD = "0x" + "b0" * 20
ESCROW = "0x" + "e5" * 20
CLIENT = "0x" + "c1" * 20
FREELANCER = "0x" + "f1" * 20
ZERO = "0x" + "00" * 20

GENESIS_TS = 1_700_000_000


def block_ts(block: int) -> int:
    return GENESIS_TS + block * 2


def make_event(
    name: str,
    args: Dict[str, Any],
    block: int,
    log_index: int = 0,
    address: str = JOB_BOARD,
    tx_hash: Optional[str] = None,
    sender: Optional[str] = None,
) -> ChainEvent:
    return ChainEvent(
        name=name,
        args=args,
        address=address,
        block_number=block,
        log_index=log_index,
        tx_hash=tx_hash or "0x" + f"{block:08x}{log_index:04x}".ljust(64, "0"),
        block_timestamp=block_ts(block),
        sender=sender,
    )


def scenario_a_events(job_id: int = 1) -> Tuple[List[ChainEvent], List[ChainEvent]]:
    """(job board events, escrow events): posted@100, hired@105, delivered@110, paid+completed@115."""
    board = [
        make_event("JobPosted", {
            "jobId": job_id, "client": CLIENT, "title": "Logo", "descriptionURI": "ipfs://desc",
            "budgetUSDC": 500_000_000, "tags": [], "expiresAt": block_ts(100) + 86_400,
        }, 100),
        make_event("JobHired", {"jobId": job_id, "client": CLIENT, "freelancer": FREELANCER, "escrow": ESCROW}, 105),
        make_event("JobCompleted", {"jobId": job_id}, 115, log_index=1),
    ]
    escrow = [
        make_event("WorkDelivered", {"jobKey": b"\x01" * 32, "uri": "ipfs://delivery-1"}, 110, address=ESCROW),
        make_event("Paid", {"jobKey": b"\x01" * 32, "to": FREELANCER, "netAmount": 490, "feeAmount": 10}, 115, address=ESCROW),
    ]
    return board, escrow


def job_snapshot(
    job_id: int,
    status: JobStatus,
    escrow: Optional[str] = None,
    freelancer: Optional[str] = None,
    updated_block: int = 100,
    description_uri: str = "ipfs://desc",
) -> Dict[str, Any]:
    raw = (
        CLIENT, "Logo", description_uri, 500_000_000, int(status),
        freelancer or ZERO, escrow or ZERO,
        block_ts(100), block_ts(updated_block), block_ts(100) + 86_400, [], 0,
    )
    fields = job_fields(raw)
    fields["job_id"] = job_id
    return fields


def escrow_snapshot(
    delivered: bool = False,
    disputed: bool = False,
    terminal: bool = False,
    deliveries: Sequence[Tuple[str, int, int]] = (),
    dispute_uri: str = "",
) -> Dict[str, Any]:
    return escrow_fields({
        "client": CLIENT,
        "freelancer": FREELANCER,
        "amount": 500_000_000,
        "current_deadlines": (0, block_ts(105) + 7 * 86_400, 0),
        "delivered": delivered,
        "disputed": disputed,
        "terminal": terminal,
        "cancel_requested_by": ZERO,
        "last_delivery_uri": deliveries[-1][0] if deliveries else "",
        "last_dispute_uri": dispute_uri,
        "deliveries": list(deliveries),
    })


def load_scenario_a(chain: "FakeChainReader", job_id: int = 1) -> None:
    """Scenario A events plus the job/escrow state the chain held after each of them."""
    board, escrow = scenario_a_events(job_id)
    chain.board_events = board
    chain.escrow_events = escrow
    delivered = [("ipfs://delivery-1", block_ts(110), 1)]
    chain.set_state("job", job_id, 100, job_snapshot(job_id, JobStatus.OPEN))
    chain.set_state("job", job_id, 105, job_snapshot(
        job_id, JobStatus.HIRED, escrow=ESCROW, freelancer=FREELANCER, updated_block=105))
    chain.set_state("job", job_id, 115, job_snapshot(
        job_id, JobStatus.COMPLETED, escrow=ESCROW, freelancer=FREELANCER, updated_block=115))
    chain.set_state("escrow", ESCROW, 105, escrow_snapshot())
    chain.set_state("escrow", ESCROW, 110, escrow_snapshot(delivered=True, deliveries=delivered))
    chain.set_state("escrow", ESCROW, 115, escrow_snapshot(delivered=True, terminal=True, deliveries=delivered))


class FakeChainReader:
    """Duck-typed ChainReader over dicts; every read is recorded in .calls."""

    def __init__(self, head: int = 0):
        self.head = head
        self.board_events: List[ChainEvent] = []
        self.escrow_events: List[ChainEvent] = []
        self.jobs: Dict[int, Dict[str, Any]] = {}
        self.escrows: Dict[str, Dict[str, Any]] = {}
        self.offers: Dict[int, Dict[str, Any]] = {}
        self.proposals: Dict[Tuple[int, str], Dict[str, Any]] = {}
        self.profiles: Dict[str, Dict[str, Any]] = {}
        self.next_job_id = 0
        # (table, key) -> [(from_block, fields)], consulted before the flat tables
        self.history: Dict[Tuple[str, Any], List[Tuple[int, Dict[str, Any]]]] = {}
        self.read_error: Optional[Exception] = None
        self.calls: List[str] = []

    def set_state(self, name: str, key, block: int, fields: Optional[Dict[str, Any]]) -> None:
        """Record the value a read returns from block onwards."""
        self.history.setdefault((name, key), []).append((block, fields))
        self.history[(name, key)].sort(key=lambda entry: entry[0])

    def _read(self, name: str, table: Dict, key, block: Optional[int] = None) -> Optional[Dict[str, Any]]:
        self.calls.append(name)
        if self.read_error is not None:
            raise self.read_error
        if (name, key) in self.history:
            value = None
            for since, fields in self.history[(name, key)]:
                if block is None or since <= block:
                    value = fields
        else:
            value = table.get(key)
        return copy.deepcopy(value) if value is not None else None

    async def get_block_number(self) -> int:
        self.calls.append("block_number")
        return self.head

    async def get_job_board_events(self, from_block: int, to_block: int) -> List[ChainEvent]:
        self.calls.append("board_events")
        return [e for e in self.board_events if from_block <= e.block_number <= to_block]

    async def get_escrow_events(self, addresses, from_block: int, to_block: int) -> List[ChainEvent]:
        self.calls.append("escrow_events")
        wanted = {a.lower() for a in addresses}
        return [
            e for e in self.escrow_events
            if e.address in wanted and from_block <= e.block_number <= to_block
        ]

    async def get_next_job_id(self, block: Optional[int] = None) -> int:
        self.calls.append("next_job_id")
        return self.next_job_id

    async def snapshot_job(self, job_id: int, block: Optional[int] = None):
        return self._read("job", self.jobs, int(job_id), block)

    async def snapshot_escrow(self, address: str, block: Optional[int] = None):
        fields = self._read("escrow", self.escrows, address.lower(), block)
        if fields is None:
            raise KeyError(address)
        return fields

    async def snapshot_direct_offer(self, job_id: int, block: Optional[int] = None):
        return self._read("offer", self.offers, int(job_id), block)

    async def get_applicants(self, job_id: int, block: Optional[int] = None) -> List[str]:
        self.calls.append("applicants")
        return sorted(f for j, f in self.proposals if j == int(job_id))

    async def snapshot_proposal(self, job_id: int, freelancer: str, block: Optional[int] = None):
        return self._read("proposal", self.proposals, (int(job_id), freelancer.lower()), block)

    async def snapshot_profile(self, wallet: str, block: Optional[int] = None):
        return self._read("profile", self.profiles, wallet.lower(), block)


class FakeProvider:
    """Provider client for FallbackRouter tests."""

    def __init__(self, name: str, fail: Optional[Exception] = None, delay: float = 0.0):
        self.name = name
        self.fail = fail
        self.delay = delay
        self.calls = 0

    async def call(self) -> str:
        self.calls += 1
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail is not None:
            raise self.fail
        return self.name


class _FakeEth:
    def __init__(self, head: int, delay: float):
        self._head = head
        self._delay = delay

    @property
    def block_number(self):
        return self._block_number()

    async def _block_number(self) -> int:
        if self._delay:
            await asyncio.sleep(self._delay)
        return self._head


class FakeWeb3:
    """Just enough of AsyncWeb3 for ChainReader.get_block_number()."""

    def __init__(self, head: int, delay: float = 0.0):
        self.eth = _FakeEth(head, delay)


class RecordingSleep:
    def __init__(self):
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


class FakeClock:
    def __init__(self, start: float = float(GENESIS_TS)):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds
