# authority.py
#
# Startup key generation for the ledger. Runs once, before the server binds,
# and hands the key pair to everything else. Key files are written so that
# clients can encrypt amounts (public key) and wallet owners can read their
# balances (private key).

import os
import glob
import time
from datetime import datetime

from .he_scheme import PublicKey, PrivateKey, keygen, parse_numeral, to_numeral

DEFAULT_KEY_BITS = 256

# ── Key folder setup ────────────────────────────────────────────────────────
BASE_DIR = os.path.dirname(__file__)
KEY_DIR  = os.path.abspath(os.path.join(BASE_DIR, os.pardir, "keys"))

PUBLIC_KEY_FILE  = "public_key.txt"
PRIVATE_KEY_FILE = "private_key.txt"


def _log(logger, msg):
    ts = datetime.now().strftime("%H:%M:%S")
    logger(f"[{ts}] [Authority] {msg}")


def bootstrap_keys(bits=DEFAULT_KEY_BITS, logger=print, key_dir=KEY_DIR):
    """
    Generate the process-wide Paillier keypair:
      1. Remove stale key files from key_dir
      2. Generate the keypair (retrying prime pairs internally)
      3. Write public_key.txt (n, g) and private_key.txt (lam, mu)
    Returns (public_key, private_key).
    """
    os.makedirs(key_dir, exist_ok=True)
    for f in glob.glob(os.path.join(key_dir, "*.txt")):
        os.remove(f)

    start = time.time()
    public_key, private_key = keygen(bits)
    _log(logger, f"Generated {bits}-bit Paillier keypair in {time.time() - start:.2f}s")

    def _write(name, txt):
        # Helper to write text files into the key directory
        with open(os.path.join(key_dir, name), "w") as f:
            f.write(txt)

    _write(PUBLIC_KEY_FILE, f"{to_numeral(public_key.n)}\n{to_numeral(public_key.g)}\n")
    _log(logger, f"Public key written ({public_key.n.bit_length()}-bit n)")
    _write(PRIVATE_KEY_FILE, f"{to_numeral(private_key.lam)}\n{to_numeral(private_key.mu)}\n")
    _log(logger, f"Private key written to {PRIVATE_KEY_FILE}")

    return public_key, private_key


def load_public_key(key_dir=KEY_DIR):
    """Read the Paillier public key (n, g) from file."""
    with open(os.path.join(key_dir, PUBLIC_KEY_FILE)) as f:
        n, g = map(parse_numeral, f.read().split())
    if g != n + 1:
        raise ValueError("public key file is corrupt: g must equal n + 1")
    return PublicKey(n)


def load_private_key(key_dir=KEY_DIR):
    """Read the Paillier private key (lam, mu) from file."""
    with open(os.path.join(key_dir, PRIVATE_KEY_FILE)) as f:
        lam, mu = map(parse_numeral, f.read().split())
    return PrivateKey(lam, mu)
