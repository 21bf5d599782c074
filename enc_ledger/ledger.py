# ledger.py
#
# Append-only ledger of encrypted running balances. Every credit/debit adds
# one record holding the new cumulative ciphertext for the wallet; balances
# are updated homomorphically and never decrypted here.

import sqlite3
import threading
import contextlib
from datetime import datetime

from .he_scheme import (
    Ciphertext,
    ModulusMismatch,
    PlaintextOutOfRange,
    add,
    encrypt,
    negate,
)


class LedgerRecord:
    """One immutable ledger entry: (seq, wallet, cumulative ciphertext)."""

    __slots__ = ("seq", "account", "ciphertext")

    def __init__(self, seq, account, ciphertext):
        object.__setattr__(self, "seq", seq)
        object.__setattr__(self, "account", account)
        object.__setattr__(self, "ciphertext", ciphertext)

    def __setattr__(self, name, value):
        raise AttributeError("ledger records are immutable")

    def __repr__(self):
        return f"LedgerRecord(seq={self.seq}, account={self.account!r}, {self.ciphertext!r})"


class PaillierProd:
    """SQLite aggregate: product of ciphertexts mod n^2 (homomorphic SUM)."""

    def __init__(self, n_sq):
        self.n_sq = n_sq
        self.product = 1

    def step(self, value):
        if value is not None:
            self.product = (self.product * int(value, 16)) % self.n_sq

    def finalize(self):
        return format(self.product, "x")


class BalanceLedger:
    """
    In-memory append-only ledger bound to one Paillier public key.

    All reads and writes go through a single lock; credit and debit hold it
    for the whole read-modify-append so two updates of the same wallet can
    never start from the same previous balance.

    Balances live in Z/nZ: a debit larger than the (unknown) balance wraps
    around to a value close to n instead of failing.
    """

    def __init__(self, public_key, logger=None):
        self.public_key = public_key
        self._logger = logger
        self._lock = threading.Lock()

        self._db = sqlite3.connect(":memory:", check_same_thread=False)
        self._db.execute(
            "CREATE TABLE ledger ("
            " seq INTEGER PRIMARY KEY AUTOINCREMENT,"
            " wallet TEXT NOT NULL,"
            " c TEXT NOT NULL)"  # hex; int(str, 16) has no digit limit
        )
        self._db.commit()
        nsq = public_key.n_squared
        self._db.create_aggregate("paillier_prod", 1, lambda: PaillierProd(nsq))

    def _log(self, msg):
        if self._logger:
            ts = datetime.now().strftime("%H:%M:%S")
            self._logger(f"[{ts}] [Ledger] {msg}")

    @contextlib.contextmanager
    def _transaction(self):
        """
        Exclusive scope over the ledger. Commits on success, rolls back and
        releases the lock on every error path.
        """
        with self._lock:
            try:
                yield self._db.cursor()
            except BaseException:
                self._db.rollback()
                raise
            else:
                self._db.commit()

    # ── reads ─────────────────────────────────────────────────────────────
    def _last(self, cur, account):
        # newest record first; linear in the size of the ledger
        row = cur.execute(
            "SELECT c FROM ledger WHERE wallet = ? ORDER BY seq DESC LIMIT 1",
            (account,)
        ).fetchone()
        if row is None:
            return None
        return Ciphertext(int(row[0], 16), self.public_key.n_squared)

    def lookup(self, account):
        """Last recorded ciphertext for `account`, or None if it was never touched."""
        with self._transaction() as cur:
            return self._last(cur, account)

    def current(self, account):
        """
        Current balance ciphertext for `account`. Untouched accounts get a
        fresh encryption of zero on every call; it is not stored.
        """
        ct = self.lookup(account)
        if ct is None:
            return encrypt(0, self.public_key)
        return ct

    def history(self, account):
        """All records for `account`, oldest first."""
        with self._transaction() as cur:
            rows = cur.execute(
                "SELECT seq, wallet, c FROM ledger WHERE wallet = ? ORDER BY seq",
                (account,)
            ).fetchall()
        return [self._record(r) for r in rows]

    def records(self):
        with self._transaction() as cur:
            rows = cur.execute("SELECT seq, wallet, c FROM ledger ORDER BY seq").fetchall()
        return [self._record(r) for r in rows]

    def accounts(self):
        with self._transaction() as cur:
            rows = cur.execute(
                "SELECT wallet FROM ledger GROUP BY wallet ORDER BY MIN(seq)"
            ).fetchall()
        return [r[0] for r in rows]

    def total(self):
        """
        Homomorphic sum of the current balances of every wallet, computed
        with the paillier_prod aggregate.
        """
        with self._transaction() as cur:
            row = cur.execute(
                "SELECT paillier_prod(c), COUNT(*) FROM ledger"
                " WHERE seq IN (SELECT MAX(seq) FROM ledger GROUP BY wallet)"
            ).fetchone()
        if not row[1]:
            return encrypt(0, self.public_key)
        return Ciphertext(int(row[0], 16), self.public_key.n_squared)

    def __len__(self):
        with self._transaction() as cur:
            return cur.execute("SELECT COUNT(*) FROM ledger").fetchone()[0]

    def _record(self, row):
        seq, wallet, c = row
        return LedgerRecord(seq, wallet, Ciphertext(int(c, 16), self.public_key.n_squared))

    # ── writes ────────────────────────────────────────────────────────────
    def _check_amount(self, amount):
        if amount < 0 or amount >= self.public_key.n:
            raise PlaintextOutOfRange("amount must be in [0, n)")

    def _apply(self, account, ct_amount):
        if ct_amount.modulus != self.public_key.n_squared:
            raise ModulusMismatch("amount was encrypted under a different key pair")
        with self._transaction() as cur:
            prev = self._last(cur, account)
            if prev is None:
                prev = encrypt(0, self.public_key)
            new = add(prev, ct_amount)
            cur.execute(
                "INSERT INTO ledger (wallet, c) VALUES (?, ?)",
                (account, format(new.c, "x"))
            )
            seq = cur.lastrowid
        self._log(f"#{seq} {account!r} → {new!r}")
        return new

    def credit(self, account, amount):
        """Add `amount` to the encrypted balance of `account`."""
        self._check_amount(amount)
        return self._apply(account, encrypt(amount, self.public_key))

    def debit(self, account, amount):
        """
        Subtract `amount` by adding its complement n - amount. The result is
        only meaningful mod n; over-debits wrap instead of failing.
        """
        self._check_amount(amount)
        neg = (self.public_key.n - amount) % self.public_key.n
        return self._apply(account, encrypt(neg, self.public_key))

    def credit_ciphertext(self, account, ct):
        """Credit an amount the caller already encrypted under our public key."""
        return self._apply(account, ct)

    def debit_ciphertext(self, account, ct):
        if ct.modulus != self.public_key.n_squared:
            raise ModulusMismatch("amount was encrypted under a different key pair")
        return self._apply(account, negate(ct))
