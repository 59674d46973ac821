"""
Tests for gridrelay.relay.amounts.
"""
from __future__ import annotations

import pytest
from eth_abi import decode

from conftest import BUY_RECEIVER, ESCROW, SELL_EMITTER, WALLET_ADDRESS, make_log
from gridrelay.chain.events import ELECTRICITY_PURCHASE, ELECTRICITY_SOLD, decode_log
from gridrelay.config import BASE_SEPOLIA, REDSTONE
from gridrelay.exceptions import ValidationError
from gridrelay.relay.amounts import (
    Direction,
    DisplayAmount,
    SettlementAmount,
    SettlementClaim,
    TransferRequest,
    require_claim,
    settlement_call,
)

SIGNATURE = "0x" + "cd" * 65


def _claim(direction=Direction.BUY, amount=1920, nonce=5):
    if direction == Direction.BUY:
        log = make_log(ELECTRICITY_PURCHASE, ESCROW, WALLET_ADDRESS.lower(), amount, nonce)
        event = decode_log(log, ELECTRICITY_PURCHASE)
    else:
        log = make_log(ELECTRICITY_SOLD, SELL_EMITTER, WALLET_ADDRESS.lower(), amount, nonce)
        event = decode_log(log, ELECTRICITY_SOLD)
    return SettlementClaim.from_event(event, "0xabc")


class TestAmounts:
    """Tests for DisplayAmount and SettlementAmount."""

    def test_settlement_amount_cannot_be_built_directly(self):
        with pytest.raises(TypeError):
            SettlementAmount(100)

    @pytest.mark.parametrize("units", [0, -3, True, "10", 1.5])
    def test_display_amount_rejects(self, units):
        with pytest.raises(ValidationError):
            DisplayAmount(units)

    def test_display_amount(self):
        assert str(DisplayAmount(1920)) == "1920"

    def test_transfer_request_is_frozen(self):
        request = TransferRequest(Direction.BUY, DisplayAmount(5), WALLET_ADDRESS, BASE_SEPOLIA, REDSTONE)
        assert not request.is_direct
        with pytest.raises(AttributeError):
            request.amount = DisplayAmount(6)


class TestSettlementClaim:
    """Tests for SettlementClaim."""

    def test_from_purchase(self):
        claim = _claim()
        assert claim.direction == Direction.BUY
        assert claim.party == WALLET_ADDRESS
        assert claim.amount.units == 1920
        assert claim.nonce == 5
        assert claim.origin_tx_hash == "0xabc"

    def test_from_sale_uses_receive_amount(self):
        claim = _claim(Direction.SELL, amount=640)
        assert claim.direction == Direction.SELL
        assert claim.amount.units == 640

    def test_require_claim_rejects_raw_values(self):
        with pytest.raises(TypeError):
            require_claim({"amount": 1920})

    def test_buy_settlement_targets_handle_purchase(self):
        call = settlement_call(_claim(), SIGNATURE, REDSTONE, BUY_RECEIVER)
        assert call.function_name == "handleElectricityPurchase"
        assert call.chain_id == REDSTONE
        data = bytes.fromhex(call.encode()[2:])
        party, amount, nonce, sig = decode(["address", "uint256", "uint256", "bytes"], data[4:])
        assert party.lower() == WALLET_ADDRESS.lower()
        assert (amount, nonce) == (1920, 5)
        assert sig == bytes.fromhex("cd" * 65)

    def test_sell_settlement_targets_escrow(self):
        call = settlement_call(_claim(Direction.SELL), SIGNATURE, BASE_SEPOLIA, ESCROW)
        assert call.function_name == "sellElectricity"
        assert call.to == ESCROW


class TestDirection:
    """Tests for Direction.parse."""

    def test_parse_is_case_insensitive(self):
        assert Direction.parse("buy") is Direction.BUY
        assert Direction.parse(Direction.SELL) is Direction.SELL

    def test_parse_unknown(self):
        with pytest.raises(ValidationError):
            Direction.parse("swap")
