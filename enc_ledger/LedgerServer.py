# LedgerServer.py
#
# TCP front end for the encrypted balance ledger. Each request is a short
# newline-separated message, each response a JSON object:
#
#   CREDIT\n<wallet>\n<amount>          DEBIT\n<wallet>\n<amount>
#   CREDIT_ENC\n<wallet>\n<ciphertext>  DEBIT_ENC\n<wallet>\n<ciphertext>
#   NET\n<wallet>                       TOTAL
#   GET_PUBLIC_KEY

import sys
import time
import json
import socket
import threading
from datetime import datetime

from .authority import DEFAULT_KEY_BITS, KEY_DIR, bootstrap_keys
from .he_scheme import LedgerError, ciphertext_from_numeral, parse_numeral, to_numeral
from .ledger import BalanceLedger

HOST = "localhost"
PORT = 9000
READ_TIMEOUT = 5.0


def make_logger(tag="Server", sink=print):
    """Timestamped logger in the `[HH:MM:SS] [tag] msg` format."""
    def log(msg):
        ts = datetime.now().strftime("%H:%M:%S")
        sink(f"[{ts}] [{tag}] {msg}")
    return log


def _ok(wallet, ct):
    return {"status": "ok", "wallet": wallet, "c": to_numeral(ct.c)}


def _error(msg):
    return {"status": "error", "error": msg}


def handle_request(data, ledger, logger=None):
    """
    Parse one request message and apply it to the ledger.
    Returns the response dict. Malformed input never reaches the ledger.
    """
    lines = [line.strip() for line in data.splitlines()]
    if not lines or not lines[0]:
        return _error("Bad format")
    cmd = lines[0].upper()
    pub = ledger.public_key

    if cmd == "GET_PUBLIC_KEY":
        return {"status": "ok", "n": to_numeral(pub.n), "g": to_numeral(pub.g)}

    if cmd == "TOTAL":
        return {"status": "ok", "c": to_numeral(ledger.total().c)}

    if len(lines) < 2 or not lines[1]:
        return _error("Bad format: missing wallet")
    wallet = lines[1]

    if cmd == "NET":
        ct = ledger.lookup(wallet)
        if ct is None:
            return {"status": "not_found", "wallet": wallet}
        return _ok(wallet, ct)

    if cmd not in ("CREDIT", "DEBIT", "CREDIT_ENC", "DEBIT_ENC"):
        return _error(f"Unknown command: {lines[0][:32]!r}")
    if len(lines) < 3:
        return _error("Bad format: missing amount")

    try:
        if cmd == "CREDIT":
            ct = ledger.credit(wallet, parse_numeral(lines[2]))
        elif cmd == "DEBIT":
            ct = ledger.debit(wallet, parse_numeral(lines[2]))
        elif cmd == "CREDIT_ENC":
            ct = ledger.credit_ciphertext(wallet, ciphertext_from_numeral(lines[2], pub))
        else:
            ct = ledger.debit_ciphertext(wallet, ciphertext_from_numeral(lines[2], pub))
    except LedgerError as e:
        if logger:
            logger(f"✗ {cmd} {wallet!r} rejected: {type(e).__name__}")
        return _error(f"{type(e).__name__}: {e}")

    if logger:
        logger(f"✓ {cmd} {wallet!r}")
    return _ok(wallet, ct)


def _read_request(conn):
    chunks = []
    while True:
        data = conn.recv(65536)
        if not data:
            break
        chunks.append(data)
    return b"".join(chunks)


def _serve_connection(conn, addr, ledger, logger):
    with conn:
        try:
            data = _read_request(conn)
        except socket.timeout:
            # client never half-closed; drop whatever it sent
            logger(f"Read timeout from {addr}")
            conn.sendall(json.dumps(_error("Bad format: request incomplete")).encode())
            return
        if not data:
            # Empty handshake, ignore
            return
        logger(f"Connection from {addr}")
        try:
            resp = handle_request(data.decode(), ledger, logger)
        except UnicodeDecodeError:
            resp = _error("Bad format: not UTF-8")
        conn.sendall(json.dumps(resp).encode())


def start_server(ledger, logger, host=HOST, port=PORT, shutdown_event=None,
                 read_timeout=READ_TIMEOUT):
    """
    Main server loop:
      - Listens on host:port
      - Hands every connection to its own worker thread; a client that has
        not finished its request within `read_timeout` seconds gets an error
      - Returns once `shutdown_event` is set
    """
    with socket.socket() as sock:
        sock.setsockopt(socket.SOL_SOCKET, socket.SO_REUSEADDR, 1)
        sock.bind((host, port))
        sock.listen(16)
        sock.settimeout(1.0)
        logger(f"Ledger server listening on {host}:{port}")

        while True:
            # Allow graceful shutdown if event set
            if shutdown_event and shutdown_event.is_set():
                logger("Server shutdown")
                return
            try:
                conn, addr = sock.accept()
            except socket.timeout:
                continue
            conn.settimeout(read_timeout)
            worker = threading.Thread(
                target=_serve_connection,
                args=(conn, addr, ledger, logger),
                daemon=True
            )
            worker.start()


# ── Async helpers ─────────────────────────────────────────────────────────

_server_thread   = None
_server_shutdown = None


def start_server_async(ledger, logger, host=HOST, port=PORT, timeout=10.0,
                       read_timeout=READ_TIMEOUT):
    """
    Launch start_server in a background thread, and wait until it's accepting connections.
    """
    global _server_thread, _server_shutdown
    if _server_thread and _server_thread.is_alive():
        raise RuntimeError("LedgerServer already running")
    _server_shutdown = threading.Event()

    def target():
        start_server(ledger, logger, host=host, port=port,
                     shutdown_event=_server_shutdown, read_timeout=read_timeout)
    _server_thread = threading.Thread(target=target, daemon=True)
    _server_thread.start()

    # Wait for server socket to open
    deadline = time.time() + timeout
    while time.time() < deadline:
        try:
            with socket.create_connection((host, port), timeout=0.5):
                logger("[LedgerServer] startup confirmed")
                return
        except OSError:
            time.sleep(0.1)
    raise TimeoutError("LedgerServer did not start in time")


def stop_server():
    """
    Signal the server thread to stop and wait for it.
    """
    global _server_thread, _server_shutdown
    if _server_shutdown:
        _server_shutdown.set()
    if _server_thread:
        _server_thread.join()
    _server_thread   = None
    _server_shutdown = None


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    if len(argv) > 2:
        print("Usage: python -m enc_ledger.LedgerServer [key_bits] [port]")
        sys.exit(1)
    bits = int(argv[0]) if len(argv) > 0 else DEFAULT_KEY_BITS
    port = int(argv[1]) if len(argv) > 1 else PORT

    # Keys first, then the ledger, then the socket
    public_key, _ = bootstrap_keys(bits, logger=print, key_dir=KEY_DIR)
    logger = make_logger("Server")
    ledger = BalanceLedger(public_key, logger=print)
    try:
        start_server(ledger, logger, port=port)
    except KeyboardInterrupt:
        print("\n[Server] Shutting down.")
        sys.exit(0)


if __name__ == "__main__":
    main()
