"""
Test suite for ledger gateway implementations

Tests the simulated ledger's balance, association and signature rules, and
the HTTP client's request shape and error mapping against a mock transport.
"""

import json
import pytest
import httpx

from money_market.errors import LedgerRejectedError
from money_market.ledger_gateway import (
    HttpLedgerGateway, InMemoryLedgerGateway, LedgerGateway, TokenConfig
)


SIGNERS = ["0.0.101", "0.0.102"]


@pytest.fixture
def gateway():
    return InMemoryLedgerGateway("0.0.treasury")


@pytest.fixture
def token_id(gateway):
    result = gateway.create_token(TokenConfig("Fund Token", "FND"), SIGNERS, idempotency_key="create-1")
    return result.token_id


class TestSignerRules:

    @pytest.mark.parametrize("signers", [[], ["0.0.101"], ["0.0.101", "0.0.101"], ["a", "b", "c"]])
    def test_require_two_distinct_signers(self, signers):
        with pytest.raises(LedgerRejectedError) as exc_info:
            LedgerGateway.require_signers(signers)

        assert exc_info.value.ledger_status == "INVALID_SIGNATURE"

    def test_signer_order_is_kept(self):
        assert LedgerGateway.require_signers(["0.0.102", "0.0.101"]) == ["0.0.102", "0.0.101"]


class TestInMemoryLedger:
    """Test the simulated ledger"""

    def test_create_token(self, gateway, token_id):
        info = gateway.query_token_info(token_id)

        assert info.symbol == "FND"
        assert info.total_supply == 0
        assert info.treasury_account_id == "0.0.treasury"

    def test_create_token_is_idempotent(self, gateway, token_id):
        replay = gateway.create_token(TokenConfig("Fund Token", "FND"), SIGNERS, idempotency_key="create-1")

        assert replay.token_id == token_id
        assert gateway.operation_count("create_token") == 1

    def test_mint_and_burn(self, gateway, token_id):
        gateway.mint(token_id, 5000, SIGNERS, idempotency_key="mint-1")
        receipt = gateway.burn(token_id, 2000, list(reversed(SIGNERS)), idempotency_key="burn-1")

        assert receipt.total_supply == 3000
        assert gateway.query_balance("0.0.treasury").tokens[token_id] == 3000

    def test_mint_replay_does_not_double_count(self, gateway, token_id):
        gateway.mint(token_id, 5000, SIGNERS, idempotency_key="mint-1")
        gateway.mint(token_id, 5000, SIGNERS, idempotency_key="mint-1")

        assert gateway.query_token_info(token_id).total_supply == 5000

    def test_mint_with_foreign_keys(self, gateway, token_id):
        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.mint(token_id, 5000, ["0.0.101", "0.0.999"])

        assert exc_info.value.ledger_status == "INVALID_SIGNATURE"

    def test_burn_more_than_treasury_holds(self, gateway, token_id):
        gateway.mint(token_id, 100, SIGNERS)

        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.burn(token_id, 101, SIGNERS)
        assert exc_info.value.ledger_status == "INSUFFICIENT_TOKEN_BALANCE"

    def test_unknown_token(self, gateway):
        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.query_token_info("0.0.404")

        assert exc_info.value.ledger_status == "INVALID_TOKEN_ID"

    @pytest.mark.parametrize("amount", [0, -1, 1.5])
    def test_invalid_amount(self, gateway, token_id, amount):
        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.mint(token_id, amount, SIGNERS)

        assert exc_info.value.ledger_status == "INVALID_TOKEN_AMOUNT"

    def test_transfer_requires_association(self, gateway, token_id):
        gateway.mint(token_id, 100, SIGNERS)

        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.transfer(token_id, "0.0.treasury", "0.0.500", 10)
        assert exc_info.value.ledger_status == "TOKEN_NOT_ASSOCIATED_TO_ACCOUNT"

    def test_transfer_round_trip(self, gateway, token_id):
        gateway.mint(token_id, 100, SIGNERS)
        gateway.associate("0.0.500", token_id, signer="0.0.500")

        gateway.transfer(token_id, "0.0.treasury", "0.0.500", 60)
        gateway.transfer(token_id, "0.0.500", "0.0.treasury", 20, signer="0.0.500")

        assert gateway.query_balance("0.0.500").tokens[token_id] == 40
        assert gateway.query_balance("0.0.treasury").tokens[token_id] == 60

    def test_investor_transfer_must_be_signed_by_sender(self, gateway, token_id):
        gateway.mint(token_id, 100, SIGNERS)
        gateway.associate("0.0.500", token_id, signer="0.0.500")
        gateway.transfer(token_id, "0.0.treasury", "0.0.500", 60)

        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.transfer(token_id, "0.0.500", "0.0.treasury", 20, signer="0.0.666")
        assert exc_info.value.ledger_status == "INVALID_SIGNATURE"

    def test_double_association(self, gateway, token_id):
        gateway.associate("0.0.500", token_id, signer="0.0.500")

        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.associate("0.0.500", token_id, signer="0.0.500")
        assert exc_info.value.ledger_status == "TOKEN_ALREADY_ASSOCIATED_TO_ACCOUNT"

    def test_health_check(self, gateway):
        assert gateway.health_check()

    def test_failure_injection_is_one_shot(self, gateway, token_id):
        gateway.fail_next("mint", "BUSY")

        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.mint(token_id, 100, SIGNERS)
        assert exc_info.value.ledger_status == "BUSY"

        assert gateway.mint(token_id, 100, SIGNERS).total_supply == 100


class TestHttpLedgerGateway:
    """Test the REST client against an httpx mock transport"""

    def _gateway(self, handler):
        return HttpLedgerGateway(
            "https://ledger.test/api/", api_key="secret",
            transport=httpx.MockTransport(handler)
        )

    def test_create_token_request(self):
        seen = {}

        def handler(request: httpx.Request) -> httpx.Response:
            seen["method"] = request.method
            seen["path"] = request.url.path
            seen["headers"] = request.headers
            seen["body"] = json.loads(request.content)
            return httpx.Response(201, json={
                "token_id": "0.0.7001",
                "treasury_account_id": "0.0.treasury",
                "transaction_id": "0.0.1@1700000000.000000001",
            })

        gateway = self._gateway(handler)
        result = gateway.create_token(TokenConfig("Fund Token", "FND", 2, 0), SIGNERS,
                                      idempotency_key="req-1")

        assert result.token_id == "0.0.7001"
        assert result.managers == SIGNERS
        assert seen["method"] == "POST"
        assert seen["path"] == "/api/tokens"
        assert seen["headers"]["Idempotency-Key"] == "req-1"
        assert seen["headers"]["Authorization"] == "Bearer secret"
        assert seen["body"]["signers"] == SIGNERS
        assert seen["body"]["symbol"] == "FND"

    def test_mint_receipt(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.url.path == "/api/tokens/0.0.7001/mint"
            return httpx.Response(200, json={"transaction_id": "tx-9", "total_supply": 500})

        receipt = self._gateway(handler).mint("0.0.7001", 500, SIGNERS, idempotency_key="req-2")

        assert receipt.transaction_id == "tx-9"
        assert receipt.status == "SUCCESS"
        assert receipt.total_supply == 500

    def test_signers_checked_before_any_request(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise AssertionError("no request expected")

        with pytest.raises(LedgerRejectedError) as exc_info:
            self._gateway(handler).burn("0.0.7001", 5, ["0.0.101"])
        assert exc_info.value.ledger_status == "INVALID_SIGNATURE"

    def test_rejection_maps_status(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(400, json={
                "status": "INSUFFICIENT_TOKEN_BALANCE",
                "message": "Insufficient balance",
            })

        with pytest.raises(LedgerRejectedError) as exc_info:
            self._gateway(handler).transfer("0.0.7001", "0.0.500", "0.0.treasury", 10, signer="0.0.500")

        assert exc_info.value.ledger_status == "INSUFFICIENT_TOKEN_BALANCE"
        assert exc_info.value.message == "Insufficient balance"
        assert exc_info.value.details["http_status"] == 400

    def test_non_json_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(503, text="upstream unavailable")

        with pytest.raises(LedgerRejectedError) as exc_info:
            self._gateway(handler).query_balance("0.0.500")

        assert exc_info.value.ledger_status == "HTTP_503"

    def test_network_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        with pytest.raises(LedgerRejectedError) as exc_info:
            self._gateway(handler).query_token_info("0.0.7001")

        assert exc_info.value.ledger_status == "NETWORK_ERROR"

    def test_balance_query(self):
        def handler(request: httpx.Request) -> httpx.Response:
            assert request.method == "GET"
            return httpx.Response(200, json={"tokens": {"0.0.7001": "1500"}})

        balance = self._gateway(handler).query_balance("0.0.500")

        assert balance.tokens == {"0.0.7001": 1500}

    def test_health_check(self):
        gateway = self._gateway(lambda request: httpx.Response(200, json={"status": "ok"}))

        assert gateway.health_check()

    def test_success_without_transaction_id(self):
        gateway = self._gateway(lambda request: httpx.Response(200, json={"status": "SUCCESS"}))

        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.transfer("0.0.7001", "0.0.treasury", "0.0.500", 10)

        assert exc_info.value.ledger_status == "MALFORMED_RESPONSE"
        assert exc_info.value.details["missing"] == ["transaction_id"]

    @pytest.mark.parametrize("content", [b"[1, 2]", b"ok"])
    def test_success_body_not_an_object(self, content):
        gateway = self._gateway(lambda request: httpx.Response(200, content=content))

        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.mint("0.0.7001", 5, SIGNERS)

        assert exc_info.value.ledger_status == "MALFORMED_RESPONSE"

    def test_error_body_not_an_object(self):
        gateway = self._gateway(lambda request: httpx.Response(400, json=["bad"]))

        with pytest.raises(LedgerRejectedError) as exc_info:
            gateway.query_balance("0.0.500")

        assert exc_info.value.ledger_status == "HTTP_400"

    def test_health_check_unreachable(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        assert not self._gateway(handler).health_check()
