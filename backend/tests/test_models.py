"""Tests for Pydantic models: TradeDirective, CloudCommand, Account, Fill, credentials."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from pydantic import ValidationError

from models.account import Account, Fill
from models.credentials import BrokerCredentials, CloudTokens, TokenRefresh
from models.directive import CloudCommand, TradeDirective


# ============================================================================
# TradeDirective
# ============================================================================


class TestTradeDirective:
    def test_camel_case_payload(self):
        directive = TradeDirective.model_validate(
            {
                "directiveId": "d-1",
                "accountId": "234567",
                "symbol": " es ",
                "action": "entry_long",
                "contracts": 2,
                "price": 5800.25,
                "timestamp": "2025-01-15T14:30:00Z",
            }
        )

        assert directive.directive_id == "d-1"
        assert directive.account_id == 234567
        assert directive.symbol == "ES"
        assert directive.action == "ENTRY_LONG"
        assert directive.contracts == 2
        assert directive.timestamp.year == 2025

    def test_defaults_to_one_contract(self):
        directive = TradeDirective.model_validate(
            {"directiveId": 7, "accountId": 1, "symbol": "NQ", "action": "EXIT"}
        )

        assert directive.contracts == 1
        assert directive.directive_id == "7"

    def test_unmapped_action_survives_validation(self):
        directive = TradeDirective.model_validate(
            {"directiveId": "d", "accountId": 1, "symbol": "NQ", "action": "flip"}
        )
        assert directive.action == "FLIP"

    @pytest.mark.parametrize(
        "payload",
        [
            {"accountId": 1, "symbol": "NQ", "action": "EXIT"},
            {"directiveId": "d", "symbol": "NQ", "action": "EXIT"},
            {"directiveId": "d", "accountId": 1, "symbol": "NQ", "action": "EXIT", "contracts": 0},
        ],
    )
    def test_invalid_payloads(self, payload):
        with pytest.raises(ValidationError):
            TradeDirective.model_validate(payload)

    def test_dump_uses_wire_names(self):
        directive = TradeDirective(directive_id="d", account_id=1, symbol="ES", action="EXIT")
        dumped = directive.model_dump(mode="json", by_alias=True)
        assert dumped["directiveId"] == "d"
        assert dumped["accountId"] == 1


class TestCloudCommand:
    def test_payload_defaults_to_empty(self):
        command = CloudCommand.model_validate({"command": "send_telemetry", "payload": None})
        assert command.payload == {}
        assert command.command_id is None

    def test_numeric_command_id(self):
        command = CloudCommand.model_validate({"commandId": 42, "command": "kill_switch"})
        assert command.command_id == "42"


# ============================================================================
# Account / Fill
# ============================================================================


class TestAccount:
    def test_unknown_broker_fields_preserved(self):
        account = Account.model_validate({"id": 1, "name": "A", "simulated": True})
        assert account.to_wire()["simulated"] is True

    def test_merged_keeps_identity_and_other_fields(self):
        account = Account.model_validate({"id": 1, "name": "A", "balance": 100.0, "pnl": 5.0})

        updated = account.merged({"balance": 120.0, "id": 99})

        assert updated.id == 1
        assert updated.balance == 120.0
        assert updated.pnl == 5.0
        assert updated.name == "A"
        assert account.balance == 100.0

    def test_wire_key(self):
        assert Account.wire_key("daily_pnl") == "dailyPnl"
        assert Account.wire_key("dailyPnl") == "dailyPnl"

    def test_telemetry_entry(self):
        account = Account.model_validate({"id": 55, "name": "", "cashBalance": 900.0, "dailyPnl": 12.0, "pnl": None})

        entry = account.telemetry_entry()

        assert entry == {
            "accountId": "55",
            "accountName": "55",
            "balance": 900.0,
            "dailyPnl": 12.0,
            "openPositions": 0,
            "isTradingEnabled": True,
        }

    def test_fill_accepts_string_ids(self):
        fill = Fill.model_validate({"id": "fill_1", "accountId": 1, "profitAndLoss": -12.5})
        assert fill.id == "fill_1"
        assert fill.to_wire()["profitAndLoss"] == -12.5


# ============================================================================
# Credentials
# ============================================================================


class TestCredentials:
    def test_broker_repr_masks_secret(self):
        text = repr(BrokerCredentials("trader@example.com", "super-secret-key"))
        assert "super-secret-key" not in text
        assert "example" not in text

    def test_cloud_tokens_repr_hides_tokens(self):
        tokens = CloudTokens("bot-1", "access-secret", "refresh-secret", "fp")
        text = repr(tokens)
        assert "access-secret" not in text
        assert "refresh-secret" not in text
        assert tokens.to_dict()["botId"] == "bot-1"

    def test_token_refresh_without_rotation(self):
        refreshed = TokenRefresh.from_response({"accessToken": "a", "refreshToken": ""})
        assert refreshed.refresh_token is None
