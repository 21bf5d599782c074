"""
Tests for the ledger transport: request handling, the TCP server and the
client helpers.
"""

import json
import socket

import pytest

from enc_ledger import LedgerClient, LedgerServer
from enc_ledger.he_scheme import decrypt, encrypt
from enc_ledger.ledger import BalanceLedger


class TestHandleRequest:
    """Request parsing and dispatch without sockets."""

    def test_credit_and_net(self, ledger, keypair):
        pub, priv = keypair
        resp = LedgerServer.handle_request("CREDIT\nalice\n100", ledger)
        assert resp["status"] == "ok"
        assert resp["wallet"] == "alice"
        net = LedgerServer.handle_request("NET\nalice", ledger)
        assert net["c"] == resp["c"]
        assert LedgerClient.decrypt_response(net, priv, pub) == 100

    def test_net_unknown_wallet(self, ledger):
        resp = LedgerServer.handle_request("NET\nbob", ledger)
        assert resp == {"status": "not_found", "wallet": "bob"}

    @pytest.mark.parametrize("amount", ["12x", "-5", "", "1.0", "0x1f"])
    def test_malformed_amount_rejected(self, ledger, amount):
        for cmd in ("CREDIT", "DEBIT", "CREDIT_ENC", "DEBIT_ENC"):
            resp = LedgerServer.handle_request(f"{cmd}\nalice\n{amount}", ledger)
            assert resp["status"] == "error"
        assert len(ledger) == 0

    def test_invalid_numeral_is_named(self, ledger):
        resp = LedgerServer.handle_request("CREDIT\nalice\nabc", ledger)
        assert resp["error"].startswith("InvalidNumeralEncoding")

    def test_amount_out_of_range(self, ledger, keypair):
        resp = LedgerServer.handle_request(f"CREDIT\nalice\n{keypair[0].n}", ledger)
        assert resp["error"].startswith("PlaintextOutOfRange")
        assert len(ledger) == 0

    def test_ciphertext_out_of_range(self, ledger, keypair):
        resp = LedgerServer.handle_request(f"CREDIT_ENC\nalice\n{keypair[0].n_squared}", ledger)
        assert resp["error"].startswith("InvalidCiphertext")
        assert len(ledger) == 0

    @pytest.mark.parametrize("cmd,kind", [
        ("CREDIT", "PlaintextOutOfRange"),
        ("DEBIT", "PlaintextOutOfRange"),
        ("CREDIT_ENC", "InvalidCiphertext"),
        ("DEBIT_ENC", "InvalidCiphertext"),
    ])
    def test_numeral_past_int_str_limit(self, ledger, cmd, kind):
        resp = LedgerServer.handle_request(f"{cmd}\nalice\n{'9' * 5000}", ledger)
        assert resp["status"] == "error"
        assert resp["error"].startswith(kind)
        assert len(ledger) == 0

    @pytest.mark.parametrize("data", ["", "\n", "CREDIT", "CREDIT\n\n5", "CREDIT\nalice", "FOO\nalice\n1"])
    def test_bad_format(self, ledger, data):
        resp = LedgerServer.handle_request(data, ledger)
        assert resp["status"] == "error"
        assert len(ledger) == 0

    def test_encrypted_amounts(self, ledger, keypair):
        pub, priv = keypair
        LedgerServer.handle_request(f"CREDIT_ENC\nw\n{encrypt(70, pub).c}", ledger)
        resp = LedgerServer.handle_request(f"DEBIT_ENC\nw\n{encrypt(20, pub).c}", ledger)
        assert LedgerClient.decrypt_response(resp, priv, pub) == 50

    def test_public_key(self, ledger, keypair):
        resp = LedgerServer.handle_request("GET_PUBLIC_KEY", ledger)
        assert int(resp["n"]) == keypair[0].n
        assert int(resp["g"]) == keypair[0].n + 1

    def test_commands_are_case_insensitive(self, ledger):
        assert LedgerServer.handle_request("credit\nw\n1", ledger)["status"] == "ok"

    def test_logger_never_sees_amount(self, ledger):
        messages = []
        LedgerServer.handle_request("CREDIT\nw\n987654", ledger, messages.append)
        assert messages
        assert not any("987654" in m for m in messages)


class TestClientFormatting:
    def test_handle_response(self, keypair):
        pub, priv = keypair
        ok = {"status": "ok", "wallet": "A", "c": str(encrypt(80, pub).c)}
        assert LedgerClient.handle_response(ok, priv, pub) == "[Ledger] A = 80"
        missing = {"status": "not_found", "wallet": "B"}
        assert LedgerClient.handle_response(missing, priv, pub) == "[Ledger] B: not found"
        err = {"status": "error", "error": "InvalidNumeralEncoding: nope"}
        assert LedgerClient.handle_response(err, priv, pub).startswith("ERROR")

    def test_decrypt_response_error(self, keypair):
        with pytest.raises(ValueError):
            LedgerClient.decrypt_response({"status": "error", "error": "x"}, keypair[1], keypair[0])


class TestServerRoundTrip:
    """End-to-end over TCP with a background server."""

    @pytest.fixture
    def server(self, keypair, free_port):
        ledger = BalanceLedger(keypair[0])
        logs = []
        LedgerServer.start_server_async(ledger, logs.append, port=free_port, read_timeout=1.0)
        yield ledger, free_port
        LedgerServer.stop_server()

    def test_toy_scenario(self, server, keypair):
        pub, priv = keypair
        ledger, port = server
        LedgerClient.credit("A", 100, port=port)
        LedgerClient.credit("A", 40, port=port)
        LedgerClient.debit("A", 60, port=port)
        assert LedgerClient.decrypt_response(LedgerClient.net("A", port=port), priv, pub) == 80
        assert LedgerClient.net("B", port=port)["status"] == "not_found"
        assert len(ledger) == 3

    def test_client_side_encryption(self, server, keypair):
        pub, priv = keypair
        _, port = server
        server_pub = LedgerClient.get_public_key(port=port)
        assert server_pub == pub
        LedgerClient.credit_encrypted("E", 500, server_pub, port=port)
        LedgerClient.debit_encrypted("E", 120, server_pub, port=port)
        assert LedgerClient.decrypt_response(LedgerClient.net("E", port=port), priv, pub) == 380

    def test_total(self, server, keypair):
        pub, priv = keypair
        _, port = server
        LedgerClient.credit("x", 3, port=port)
        LedgerClient.credit("y", 4, port=port)
        resp = LedgerClient.total(port=port)
        assert LedgerClient.decrypt_response(resp, priv, pub) == 7

    def test_rejected_request_keeps_serving(self, server, keypair):
        pub, priv = keypair
        ledger, port = server
        resp = LedgerClient.send_command(["CREDIT", "A", "not-a-number"], port=port)
        assert resp["status"] == "error"
        assert len(ledger) == 0
        LedgerClient.credit("A", 1, port=port)
        assert decrypt(ledger.current("A"), priv, pub) == 1

    def test_double_start_rejected(self, server, keypair):
        _, port = server
        with pytest.raises(RuntimeError):
            LedgerServer.start_server_async(BalanceLedger(keypair[0]), print, port=port)

    def test_oversized_numeral_over_tcp(self, server):
        ledger, port = server
        resp = LedgerClient.send_command(["CREDIT", "A", "9" * 5000], port=port)
        assert resp["error"].startswith("PlaintextOutOfRange")
        assert len(ledger) == 0

    def test_unfinished_request_times_out(self, server, keypair):
        pub, priv = keypair
        _, port = server
        with socket.create_connection(("localhost", port), timeout=10) as s:
            # no half-close: the server must give up on its own
            s.sendall(b"NET\nA")
            resp = json.loads(s.recv(4096).decode())
        assert resp == {"status": "error", "error": "Bad format: request incomplete"}
        LedgerClient.credit("A", 5, port=port)
        assert LedgerClient.decrypt_response(LedgerClient.net("A", port=port), priv, pub) == 5
