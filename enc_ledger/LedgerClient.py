# LedgerClient.py

import sys
import json
import socket

from .authority import KEY_DIR, load_private_key, load_public_key
from .he_scheme import PublicKey, ciphertext_from_numeral, decrypt, encrypt, parse_numeral, to_numeral

HOST = "localhost"
PORT = 9000


def send_command(lines, host=HOST, port=PORT):
    """Send one request (list of lines) and return the decoded JSON response."""
    msg = "\n".join(to_numeral(line) if isinstance(line, int) else str(line) for line in lines)
    chunks = []
    with socket.create_connection((host, port)) as s:
        s.sendall(msg.encode())
        # tell the server the request is complete
        s.shutdown(socket.SHUT_WR)
        while True:
            data = s.recv(4096)
            if not data:
                break
            chunks.append(data)
    return json.loads(b"".join(chunks).decode())


def get_public_key(host=HOST, port=PORT):
    resp = send_command(["GET_PUBLIC_KEY"], host, port)
    return PublicKey(parse_numeral(resp["n"]))


def credit(wallet: str, amount: int, host=HOST, port=PORT) -> dict:
    return send_command(["CREDIT", wallet, amount], host, port)


def debit(wallet: str, amount: int, host=HOST, port=PORT) -> dict:
    return send_command(["DEBIT", wallet, amount], host, port)


def credit_encrypted(wallet: str, amount: int, public_key, host=HOST, port=PORT) -> dict:
    """Encrypt `amount` locally so the server never sees it, then credit."""
    ct = encrypt(amount, public_key)
    return send_command(["CREDIT_ENC", wallet, ct.c], host, port)


def debit_encrypted(wallet: str, amount: int, public_key, host=HOST, port=PORT) -> dict:
    ct = encrypt(amount, public_key)
    return send_command(["DEBIT_ENC", wallet, ct.c], host, port)


def net(wallet: str, host=HOST, port=PORT) -> dict:
    return send_command(["NET", wallet], host, port)


def total(host=HOST, port=PORT) -> dict:
    return send_command(["TOTAL"], host, port)


def decrypt_response(resp: dict, private_key, public_key):
    """
    Plaintext balance carried by a response, or None for not_found.
    Raises ValueError for error responses.
    """
    status = resp.get("status")
    if status == "not_found":
        return None
    if status != "ok":
        raise ValueError(resp.get("error", f"unknown status {status!r}"))
    ct = ciphertext_from_numeral(resp["c"], public_key)
    return decrypt(ct, private_key, public_key)


def handle_response(resp: dict, private_key, public_key) -> str:
    """
    Returns a formatted string like:
      [Ledger] alice = 80
      [Ledger] bob: not found
    """
    status = resp.get("status")
    if status == "error":
        return f"ERROR: {resp.get('error')}"
    label = resp.get("wallet", "TOTAL")
    if status == "not_found":
        return f"[Ledger] {label}: not found"
    return f"[Ledger] {label} = {decrypt_response(resp, private_key, public_key)}"


USAGE = """Commands:
  credit <wallet> <amount>     debit <wallet> <amount>
  credit! <wallet> <amount>    debit! <wallet> <amount>   (encrypt locally)
  net <wallet>                 total
  quit"""


def main():
    print("[Client] Starting…")
    public_key  = load_public_key(KEY_DIR)
    private_key = load_private_key(KEY_DIR)
    print(USAGE)

    while True:
        try:
            parts = input("ledger> ").split()
            if not parts:
                continue
            cmd, args = parts[0].lower(), parts[1:]
            if cmd in ("quit", "exit"):
                break
            if cmd == "total" and not args:
                resp = total()
            elif cmd == "net" and len(args) == 1:
                resp = net(args[0])
            elif cmd in ("credit", "debit") and len(args) == 2:
                fn = credit if cmd == "credit" else debit
                resp = fn(args[0], args[1])
            elif cmd in ("credit!", "debit!") and len(args) == 2:
                fn = credit_encrypted if cmd == "credit!" else debit_encrypted
                try:
                    resp = fn(args[0], parse_numeral(args[1]), public_key)
                except ValueError as e:
                    print(f"ERROR: {e}")
                    continue
            else:
                print(USAGE)
                continue
            print(handle_response(resp, private_key, public_key))
        except KeyboardInterrupt:
            print("\nGoodbye.")
            sys.exit(0)
        except OSError as e:
            print(f"[Client] Connection failed: {e}")


if __name__ == "__main__":
    main()
