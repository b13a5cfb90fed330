"""ingestion/abi.py

Read/event ABI fragments of the marketplace contracts.

Only the view functions and events the sync layer consumes are declared;
nothing here can build a state-changing transaction.
"""

from __future__ import annotations

from typing import Any, Dict, List, Sequence

from eth_utils import event_abi_to_log_topic


def _param(type_: str, name: str = "", indexed: bool = None, components: Sequence[Dict[str, Any]] = None) -> Dict[str, Any]:
    p: Dict[str, Any] = {"type": type_, "name": name}
    if indexed is not None:
        p["indexed"] = indexed
    if components is not None:
        p["components"] = list(components)
    return p


def _view(name: str, inputs: Sequence[str], outputs: Sequence[Any]) -> Dict[str, Any]:
    return {
        "type": "function",
        "name": name,
        "stateMutability": "view",
        "inputs": [_param(t, f"arg{i}") for i, t in enumerate(inputs)],
        "outputs": [o if isinstance(o, dict) else _param(o) for o in outputs],
    }


def _event(name: str, inputs: Sequence[Dict[str, Any]]) -> Dict[str, Any]:
    return {"type": "event", "name": name, "anonymous": False, "inputs": list(inputs)}


JOB_BOARD_EVENTS: List[Dict[str, Any]] = [
    _event("JobPosted", [
        _param("uint256", "jobId", True),
        _param("address", "client", True),
        _param("string", "title", False),
        _param("string", "descriptionURI", False),
        _param("uint256", "budgetUSDC", False),
        _param("bytes32[]", "tags", False),
        _param("uint64", "expiresAt", False),
    ]),
    _event("JobApplied", [
        _param("uint256", "jobId", True),
        _param("address", "freelancer", True),
        _param("uint64", "appliedAt", False),
    ]),
    _event("JobHired", [
        _param("uint256", "jobId", True),
        _param("address", "client", True),
        _param("address", "freelancer", True),
        _param("address", "escrow", False),
    ]),
    _event("JobCompleted", [
        _param("uint256", "jobId", True),
    ]),
]

JOB_BOARD_ABI: List[Dict[str, Any]] = [
    _view("getJob", ["uint256"], [
        "address", "string", "string", "uint256", "uint8", "address", "address",
        "uint64", "uint64", "uint64", "bytes32[]", "uint256",
    ]),
    _view("getApplicantCount", ["uint256"], ["uint256"]),
    _view("getApplicants", ["uint256", "uint256", "uint256"], ["address[]", "uint64[]"]),
    _view("getApplicantDetails", ["uint256", "address"], ["address", "uint64", "string", "uint256", "uint64"]),
    _view("getDirectOffer", ["uint256"], [
        _param("tuple", "", components=[
            _param(t, f"f{i}") for i, t in enumerate([
                "uint256", "address", "address", "string", "string", "uint256",
                "uint64", "uint64", "uint64", "bool", "bool", "bool",
            ])
        ]),
    ]),
    _view("nextJobId", [], ["uint256"]),
] + JOB_BOARD_EVENTS

ESCROW_EVENTS: List[Dict[str, Any]] = [
    _event("WorkDelivered", [
        _param("bytes32", "jobKey", True),
        _param("string", "uri", False),
    ]),
    _event("DisputeRaised", [
        _param("bytes32", "jobKey", True),
        _param("string", "reasonURI", False),
    ]),
    _event("Paid", [
        _param("bytes32", "jobKey", True),
        _param("address", "to", True),
        _param("uint256", "netAmount", False),
        _param("uint256", "feeAmount", False),
    ]),
]

ESCROW_ABI: List[Dict[str, Any]] = [
    _view("client", [], ["address"]),
    _view("freelancer", [], ["address"]),
    _view("amount", [], ["uint256"]),
    _view("currentDeadlines", [], ["uint64", "uint64", "uint64"]),
    _view("delivered", [], ["bool"]),
    _view("disputed", [], ["bool"]),
    _view("terminal", [], ["bool"]),
    _view("cancelRequestedBy", [], ["address"]),
    _view("lastDeliveryURI", [], ["string"]),
    _view("lastDisputeURI", [], ["string"]),
    _view("getAllDeliveries", [], [
        _param("tuple[]", "", components=[
            _param("string", "uri"),
            _param("uint64", "timestamp"),
            _param("uint256", "version"),
        ]),
    ]),
] + ESCROW_EVENTS

FREELANCER_FACTORY_ABI: List[Dict[str, Any]] = [
    _view("freelancerProfile", ["address"], ["address"]),
]

FREELANCER_PROFILE_ABI: List[Dict[str, Any]] = [
    _view("hourlyRate", [], ["uint256"]),
    _view("bio", [], ["string"]),
    _view("getSkills", [], ["string[]"]),
    _view("portfolioURI", [], ["string"]),
    _view("totalEarned", [], ["uint256"]),
    _view("jobsCompleted", [], ["uint256"]),
    _view("averageRating", [], ["uint256"]),
    _view("isActive", [], ["bool"]),
]


def event_topic(event_abi: Dict[str, Any]) -> str:
    return "0x" + event_abi_to_log_topic(event_abi).hex()


JOB_BOARD_TOPICS: Dict[str, str] = {e["name"]: event_topic(e) for e in JOB_BOARD_EVENTS}
ESCROW_TOPICS: Dict[str, str] = {e["name"]: event_topic(e) for e in ESCROW_EVENTS}
