# he_scheme.py
#
# Paillier homomorphic encryption primitives used by the balance ledger:
# prime generation, key generation, encryption, decryption and homomorphic
# combination of ciphertexts.

import decimal
import math
import random
import re

# Blinding factors, Miller-Rabin bases and prime candidates all come from
# the OS entropy pool.
_rng = random.SystemRandom()

MR_ROUNDS = 40
MAX_KEYGEN_ATTEMPTS = 64
SMALL_PRIMES = [2, 3, 5, 7, 11, 13, 17, 19, 23, 29, 31, 37, 41, 43, 47]

_NUMERAL = re.compile(r"[0-9]+")


# ── Errors ─────────────────────────────────────────────────────────────────
class LedgerError(Exception):
    """Base class for every error the ledger reports to its callers."""


class InvalidNumeralEncoding(LedgerError, ValueError):
    """Input string is not a non-negative base-10 integer."""


class PlaintextOutOfRange(LedgerError, ValueError):
    """Plaintext is outside the message space [0, n)."""


class InvalidCiphertext(LedgerError, ValueError):
    """Ciphertext value cannot belong to the ciphertext space of the key."""


class ModulusMismatch(LedgerError):
    """Ciphertexts (or a ciphertext and a key) come from different key pairs."""


class KeyGenerationRetryExhausted(LedgerError):
    """No usable prime pair was found within the attempt budget."""


# ── Key and ciphertext containers ─────────────────────────────────────────
class PublicKey:
    """Paillier public key (n, g) with g fixed to n + 1."""

    def __init__(self, n):
        self.n = n
        self.n_squared = n * n
        self.g = n + 1

    def __eq__(self, other):
        return isinstance(other, PublicKey) and self.n == other.n

    def __hash__(self):
        return hash(self.n)

    def __repr__(self):
        return f"PublicKey(n={self.n})"


class PrivateKey:
    """Paillier private key (lam, mu)."""

    def __init__(self, lam, mu):
        self.lam = lam
        self.mu = mu

    def __repr__(self):
        # never print the secret values
        return "PrivateKey(...)"


class Ciphertext:
    """
    A Paillier ciphertext c together with the modulus n^2 it lives in.
    str(ct) is the decimal encoding used on the wire.
    """

    def __init__(self, c, modulus):
        self.c = c
        self.modulus = modulus

    def __eq__(self, other):
        return (isinstance(other, Ciphertext)
                and self.c == other.c and self.modulus == other.modulus)

    def __hash__(self):
        return hash((self.c, self.modulus))

    def __str__(self):
        return to_numeral(self.c)

    def __repr__(self):
        s = to_numeral(self.c)
        short = s if len(s) <= 16 else s[:8] + "…" + s[-4:]
        return f"Ciphertext(c={short})"


# ── Number theory helpers ─────────────────────────────────────────────────
def is_prime(n, k=MR_ROUNDS):
    """
    Miller–Rabin primality test.
    - n: integer to test
    - k: number of random bases
    Returns True if n is (probably) prime, False otherwise.
    """
    if n < 2:
        return False
    # Quick check for small prime divisors
    for p in SMALL_PRIMES:
        if n % p == 0:
            return n == p
    # Write n-1 as 2^s * d
    s, d = 0, n - 1
    while d % 2 == 0:
        s += 1
        d //= 2
    for _ in range(k):
        a = _rng.randrange(2, n - 1)
        x = pow(a, d, n)
        if x in (1, n - 1):
            continue
        for _ in range(s - 1):
            x = pow(x, 2, n)
            if x == n - 1:
                break
        else:
            return False
    return True


def generate_prime(bits):
    """
    Generate a random prime of exactly `bits` bits.
    Loops until a candidate passes is_prime.
    """
    if bits < 2:
        raise ValueError(f"prime bit length must be >= 2, got {bits}")
    while True:
        # Ensure top bit and low bit set so that number has correct size and is odd
        p = _rng.getrandbits(bits) | (1 << (bits - 1)) | 1
        if is_prime(p):
            return p


def egcd(a, b):
    """
    Extended Euclidean algorithm.
    Returns (g, x, y) such that a*x + b*y = g = gcd(a, b).
    """
    x0, y0, x1, y1 = 1, 0, 0, 1
    while b:
        q, a, b = a // b, b, a % b
        x0, x1 = x1, x0 - q * x1
        y0, y1 = y1, y0 - q * y1
    return (a, x0, y0)


def modinv(a, m):
    """
    Modular inverse: find x such that (a * x) % m == 1.
    Returns None if the inverse does not exist.
    """
    g, x, _ = egcd(a % m, m)
    if g != 1:
        return None
    return x % m


def parse_numeral(s):
    """
    Parse a base-10 numeral string into a non-negative int.
    Goes through Decimal so numerals of any length convert; int(str) refuses
    more than sys.get_int_max_str_digits() digits.
    """
    if not isinstance(s, str):
        raise InvalidNumeralEncoding(f"expected a numeral string, got {type(s).__name__}")
    s = s.strip()
    if not _NUMERAL.fullmatch(s):
        raise InvalidNumeralEncoding(f"not a non-negative base-10 integer: {s[:40]!r}")
    try:
        return int(decimal.Decimal(s))
    except (ValueError, decimal.DecimalException) as e:
        raise InvalidNumeralEncoding(f"cannot convert numeral of {len(s)} digits") from e


def to_numeral(value):
    """Base-10 string for a non-negative int of any size (the wire encoding)."""
    return str(decimal.Decimal(value))


# ── Paillier ──────────────────────────────────────────────────────────────
def keygen(bits=256, max_attempts=MAX_KEYGEN_ATTEMPTS):
    """
    Generate a Paillier keypair.
    - bits: total bit-length of modulus n
    - max_attempts: how many prime pairs to try before giving up
    Returns (public_key, private_key).

    lam = (p-1)(q-1) is only valid together with g = n + 1; revisit both
    if the generator ever changes.
    """
    if bits // 2 < 2:
        raise ValueError(f"key size too small: {bits} bits")
    for _ in range(max_attempts):
        p = generate_prime(bits // 2)
        q = generate_prime(bits // 2)
        if p == q:
            continue
        n = p * q
        lam = (p - 1) * (q - 1)
        mu = modinv(lam, n)
        if mu is None:
            continue
        return PublicKey(n), PrivateKey(lam, mu)
    raise KeyGenerationRetryExhausted(
        f"no usable {bits}-bit modulus after {max_attempts} prime pairs")


def _blinding_factor(n):
    # r must be a unit mod n, otherwise the ciphertext cannot be decrypted
    while True:
        r = _rng.randrange(1, n)
        if math.gcd(r, n) == 1:
            return r


def encrypt(m, public_key):
    """
    Paillier encrypt integer m under public_key.
    Encryption: c = g^m * r^n mod n^2, with a fresh random r per call.
    """
    n, nsq = public_key.n, public_key.n_squared
    if m < 0 or m >= n:
        raise PlaintextOutOfRange("plaintext must be in [0, n)")
    r = _blinding_factor(n)
    c = (pow(public_key.g, m, nsq) * pow(r, n, nsq)) % nsq
    return Ciphertext(c, nsq)


def decrypt(ct, private_key, public_key):
    """
    Paillier decrypt ciphertext ct.
    Decryption: m = L(c^lam mod n^2) * mu mod n, with L(u) = (u - 1) / n.
    Returns decrypted integer in [0, n).
    """
    if ct.modulus != public_key.n_squared:
        raise ModulusMismatch("ciphertext was not produced under this key pair")
    n = public_key.n
    x = pow(ct.c, private_key.lam, public_key.n_squared)
    return ((x - 1) // n * private_key.mu) % n


def add(ct1, ct2):
    """Homomorphic addition: the product of two ciphertexts mod n^2."""
    if ct1.modulus != ct2.modulus:
        raise ModulusMismatch("cannot combine ciphertexts from different key pairs")
    return Ciphertext((ct1.c * ct2.c) % ct1.modulus, ct1.modulus)


def negate(ct):
    """
    Ciphertext of (-m) mod n given a ciphertext of m: c^-1 mod n^2.
    """
    inv = modinv(ct.c, ct.modulus)
    if inv is None:
        raise InvalidCiphertext("ciphertext is not invertible modulo n^2")
    return Ciphertext(inv, ct.modulus)


def aggregate(ciphertexts, public_key):
    """
    Homomorphically aggregate multiple ciphertexts (product mod n^2)
    to get encryption of the sum of their plaintexts.
    An empty list yields a fresh encryption of zero.
    """
    agg = encrypt(0, public_key)
    for ct in ciphertexts:
        agg = add(agg, ct)
    return agg


def ciphertext_from_numeral(s, public_key):
    """
    Decode a wire-format ciphertext under public_key.
    Rejects malformed numerals and values outside (0, n^2).
    """
    c = parse_numeral(s)
    if c <= 0 or c >= public_key.n_squared:
        raise InvalidCiphertext("ciphertext outside the range (0, n^2)")
    return Ciphertext(c, public_key.n_squared)
