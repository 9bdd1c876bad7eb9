"""
Unit tests for client/gas.py -- gas oracle with caching.
"""

from decimal import Decimal
from unittest.mock import patch, MagicMock

import httpx

from client.gas import GasOracle


def _rpc_response(result: str) -> MagicMock:
    mock_resp = MagicMock()
    mock_resp.json.return_value = {"jsonrpc": "2.0", "id": 1, "result": result}
    mock_resp.raise_for_status = MagicMock()
    return mock_resp


class TestGetGasPriceWei:
    @patch("client.gas.httpx.post")
    def test_fetches_from_rpc(self, mock_post):
        """Should parse hex gas price from RPC response."""
        # 30 gwei = 0x6FC23AC00
        mock_post.return_value = _rpc_response("0x6FC23AC00")
        oracle = GasOracle(cache_sec=0)
        assert oracle.get_gas_price_wei() == 30 * 10**9
        mock_post.assert_called_once()
        assert mock_post.call_args.kwargs["json"]["method"] == "eth_gasPrice"

    @patch("client.gas.httpx.post")
    def test_uses_cache_when_fresh(self, mock_post):
        """Should not re-fetch if cache is fresh."""
        mock_post.return_value = _rpc_response("0x6FC23AC00")
        oracle = GasOracle(cache_sec=60.0)
        oracle.get_gas_price_wei()
        oracle.get_gas_price_wei()
        assert mock_post.call_count == 1

    @patch("client.gas.httpx.post")
    def test_falls_back_to_default_on_error(self, mock_post):
        """Should return default on RPC failure."""
        mock_post.side_effect = httpx.ConnectError("Connection refused")
        oracle = GasOracle(default_gas_gwei=2.5)
        assert oracle.get_gas_price_wei() == 2_500_000_000

    @patch("client.gas.httpx.post")
    def test_falls_back_on_malformed_payload(self, mock_post):
        bad = MagicMock()
        bad.json.return_value = {"error": {"code": -32000, "message": "nope"}}
        bad.raise_for_status = MagicMock()
        mock_post.return_value = bad
        oracle = GasOracle(default_gas_gwei=1.0)
        assert oracle.get_gas_price_wei() == 10**9

    @patch("client.gas.httpx.post")
    def test_offline_mode_never_calls_network(self, mock_post):
        oracle = GasOracle(allow_network=False, default_gas_gwei=3.0)
        assert oracle.get_gas_price_wei() == 3 * 10**9
        mock_post.assert_not_called()


class TestEstimateCost:
    @patch("client.gas.httpx.post")
    def test_cost_in_native_units(self, mock_post):
        mock_post.return_value = _rpc_response(hex(10 * 10**9))
        oracle = GasOracle(cache_sec=0)
        # 300k gas at 10 gwei = 0.003
        assert oracle.estimate_cost_eth(300_000) == Decimal("0.003")
