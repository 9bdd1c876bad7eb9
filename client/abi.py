"""
Minimal ABI fragments for the contracts the keeper touches. Only the
functions the LedgerGateway needs are declared. Set ABI_DIR to load full
compiled artifacts ({"abi": [...]}) instead.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


def _fn(name: str, inputs: list[tuple[str, str]], outputs: list[dict], mutability: str = "view") -> dict:
    return {
        "type": "function",
        "name": name,
        "stateMutability": mutability,
        "inputs": [{"name": n, "type": t} for n, t in inputs],
        "outputs": outputs,
    }


def _out(name: str, typ: str) -> dict:
    return {"name": name, "type": typ}


def _tuple(name: str, components: list[tuple[str, str]]) -> dict:
    return {
        "name": name,
        "type": "tuple",
        "components": [{"name": n, "type": t} for n, t in components],
    }


ORDER_COMPONENTS = [
    ("id", "uint256"),
    ("user", "address"),
    ("tokenIn", "address"),
    ("tokenOut", "address"),
    ("amountIn", "uint256"),
    ("targetPrice", "uint256"),
    ("minAmountOut", "uint256"),
    ("orderType", "uint8"),
    ("isLong", "bool"),
    ("executed", "bool"),
    ("createdAt", "uint256"),
]

POSITION_COMPONENTS = [
    ("id", "uint256"),
    ("user", "address"),
    ("token", "address"),
    ("collateralAmount", "uint256"),
    ("leverage", "uint256"),
    ("positionType", "uint8"),
    ("entryPrice", "uint256"),
    ("size", "uint256"),
    ("isOpen", "bool"),
    ("createdAt", "uint256"),
]

ROUTER_ABI = [
    _fn("isSystemPaused", [], [_out("", "bool")]),
    _fn("getNextOrderId", [], [_out("", "uint256")]),
    _fn("getNextPositionId", [], [_out("", "uint256")]),
    _fn("getOrder", [("orderId", "uint256")], [_tuple("", ORDER_COMPONENTS)]),
    _fn("getPosition", [("positionId", "uint256")], [_tuple("", POSITION_COMPONENTS)]),
    _fn("shouldExecuteOrder", [("orderId", "uint256")], [_out("", "bool")]),
    _fn("selfExecuteOrder", [("orderId", "uint256")], [], mutability="nonpayable"),
    _fn("liquidatePosition", [("positionId", "uint256")], [], mutability="nonpayable"),
]

ORACLE_ABI = [
    _fn("getPrice", [("token", "address")], [_out("", "uint256")]),
    _fn(
        "getTokenPriceInfo",
        [("token", "address")],
        [
            _out("currentPrice", "uint256"),
            _out("lastUpdate", "uint256"),
            _out("isValid", "bool"),
            _out("isStale", "bool"),
            _out("historicalCount", "uint256"),
        ],
    ),
    _fn(
        "batchUpdatePrices",
        [("tokens", "address[]"), ("prices", "uint256[]")],
        [],
        mutability="nonpayable",
    ),
]

POOL_ABI = [
    _fn("totalTokenBalances", [("token", "address")], [_out("", "uint256")]),
]

ACCESS_CONTROL_ABI = [
    _fn("emergencyStop", [], [_out("", "bool")]),
]

BUILTIN_ABIS = {
    "Router": ROUTER_ABI,
    "Oracle": ORACLE_ABI,
    "Pool": POOL_ABI,
    "AccessControl": ACCESS_CONTROL_ABI,
}


def load_abi(name: str, abi_dir: str = "") -> list[dict]:
    """
    ABI for contract *name*. Looks for <abi_dir>/<name>.json (either a bare
    ABI list or a compiled artifact with an "abi" key), falling back to the
    built-in fragment.
    """
    if abi_dir:
        path = Path(abi_dir) / f"{name}.json"
        if path.exists():
            data = json.loads(path.read_text())
            abi = data["abi"] if isinstance(data, dict) else data
            logger.debug("Loaded %s ABI from %s (%d entries)", name, path, len(abi))
            return abi
        logger.debug("No %s artifact in %s, using built-in fragment", name, abi_dir)
    return BUILTIN_ABIS[name]


def output_names(abi: list[dict], fn_name: str) -> list[str]:
    """Component names of a function's single tuple output, or its named outputs."""
    for entry in abi:
        if entry.get("type") == "function" and entry.get("name") == fn_name:
            outputs = entry.get("outputs", [])
            if len(outputs) == 1 and outputs[0].get("type") == "tuple":
                return [c["name"] for c in outputs[0]["components"]]
            return [o.get("name", "") for o in outputs]
    raise KeyError(f"Function {fn_name} not in ABI")
