#!/usr/bin/env python3
import os
import time
import socket
import tempfile

import numpy as np
import pandas as pd
import matplotlib
matplotlib.use("Agg")
import matplotlib.pyplot as plt

from enc_ledger.authority import bootstrap_keys
from enc_ledger.he_scheme import add, decrypt, encrypt, keygen
from enc_ledger.ledger import BalanceLedger
from enc_ledger import LedgerClient, LedgerServer

# ── Configuration ──────────────────────────────────────────────────────────────
FIG_DIR = os.path.join(os.path.dirname(__file__), "figures")

N_RUNS    = 5                       # how many times to repeat each measurement
KEY_SIZES = [128, 256, 512, 1024]   # modulus sizes in bits
AMOUNTS   = [100, 40, 60]           # credit, credit, debit

def logger(msg: str):
    """Simple timestamped console logger."""
    print(f"[{time.strftime('%H:%M:%S')}] {msg}")

def _free_port() -> int:
    with socket.socket() as s:
        s.bind(("localhost", 0))
        return s.getsockname()[1]

def _timed(fn, *args):
    t0 = time.perf_counter()
    out = fn(*args)
    return out, time.perf_counter() - t0

# ── In-process primitives ──────────────────────────────────────────────────────
def bench_primitives(bits: int) -> dict:
    """
    Time keygen / encrypt / decrypt / add and one credit-credit-debit cycle
    on a fresh ledger. Returns averaged timings and the decryption check.
    """
    kg_t, enc_t, dec_t, add_t, led_t = [], [], [], [], []
    ok = True
    for _ in range(N_RUNS):
        (pub, priv), t = _timed(keygen, bits)
        kg_t.append(t)

        ct_a, t = _timed(encrypt, 1234, pub)
        enc_t.append(t)
        ct_b = encrypt(4321, pub)

        ct_sum, t = _timed(add, ct_a, ct_b)
        add_t.append(t)

        m, t = _timed(decrypt, ct_sum, priv, pub)
        dec_t.append(t)
        ok = ok and m == 5555

        ledger = BalanceLedger(pub)
        t0 = time.perf_counter()
        ledger.credit("bench", AMOUNTS[0])
        ledger.credit("bench", AMOUNTS[1])
        ledger.debit("bench", AMOUNTS[2])
        led_t.append((time.perf_counter() - t0) / 3)
        ok = ok and decrypt(ledger.current("bench"), priv, pub) == AMOUNTS[0] + AMOUNTS[1] - AMOUNTS[2]

    return {
        "bits":         bits,
        "keygen_avg":   np.mean(kg_t),
        "encrypt_avg":  np.mean(enc_t),
        "decrypt_avg":  np.mean(dec_t),
        "add_avg":      np.mean(add_t),
        "ledger_op_avg": np.mean(led_t),
        "correct":      ok,
    }

# ── Server round trip ──────────────────────────────────────────────────────────
def bench_server(bits: int) -> dict:
    """Round-trip time of CREDIT / DEBIT / NET against a local LedgerServer."""
    rtt = []
    ok = True
    # the key files hold the private key; removed with the directory
    with tempfile.TemporaryDirectory(prefix="ledger-keys-") as key_dir:
        pub, priv = bootstrap_keys(bits, logger=logger, key_dir=key_dir)
        ledger = BalanceLedger(pub)
        port = _free_port()
        LedgerServer.start_server_async(ledger, logger, port=port)
        try:
            for i in range(N_RUNS):
                wallet = f"w{i}"
                t0 = time.perf_counter()
                LedgerClient.credit(wallet, AMOUNTS[0], port=port)
                LedgerClient.credit(wallet, AMOUNTS[1], port=port)
                LedgerClient.debit(wallet, AMOUNTS[2], port=port)
                resp = LedgerClient.net(wallet, port=port)
                rtt.append((time.perf_counter() - t0) / 4)
                val = LedgerClient.decrypt_response(resp, priv, pub)
                if val != AMOUNTS[0] + AMOUNTS[1] - AMOUNTS[2]:
                    logger(f"⚠ wrong balance for {wallet}: {val}")
                    ok = False
        finally:
            LedgerServer.stop_server()
    return {"bits": bits, "server_rt_avg": np.mean(rtt), "server_correct": ok}

# ── Full Benchmark + Plotting ──────────────────────────────────────────────────
def run_metrics():
    """
    Runs each benchmark N_RUNS times per key size, collects averages in a
    DataFrame and produces a log-scale bar plot.
    """
    os.makedirs(FIG_DIR, exist_ok=True)
    records = []
    for bits in KEY_SIZES:
        row = bench_primitives(bits)
        row.update(bench_server(bits))
        row["correct"] = row["correct"] and row.pop("server_correct")
        records.append(row)
        logger(f"bits={bits} → keygen={row['keygen_avg']:.3f}s "
               f"enc={row['encrypt_avg']*1e3:.2f}ms dec={row['decrypt_avg']*1e3:.2f}ms "
               f"rt={row['server_rt_avg']*1e3:.2f}ms correct={row['correct']}")

    df = pd.DataFrame(records)

    cols = ["encrypt_avg", "decrypt_avg", "add_avg", "ledger_op_avg", "server_rt_avg"]
    x, w = np.arange(len(df)), 0.16
    fig, ax = plt.subplots(figsize=(10, 4))
    ax.set_yscale("log")
    ax.grid(True, axis="y", which="major", linestyle="--", linewidth=0.7, alpha=0.7)
    for i, col in enumerate(cols):
        ax.bar(x + (i - 2) * w, df[col], width=w, label=col.replace("_avg", ""))
    ax.set_xticks(x)
    ax.set_xticklabels([f"{b} bits" for b in df["bits"]])
    ax.set_xlabel("Modulus size")
    ax.set_ylabel("Time (s, log scale)")
    ax.set_title("Paillier ledger operation cost by key size")
    ax.legend(title="Operation", loc="upper left")
    plt.tight_layout()
    fig.savefig(os.path.join(FIG_DIR, "ledger_costs.png"))

    fig, ax = plt.subplots(figsize=(6, 4))
    ax.plot(df["bits"], df["keygen_avg"], marker="o")
    ax.set_yscale("log")
    ax.set_xlabel("Modulus size (bits)")
    ax.set_ylabel("Key generation time (s, log scale)")
    ax.set_title("Key generation cost")
    plt.tight_layout()
    fig.savefig(os.path.join(FIG_DIR, "keygen_cost.png"))

    return df

if __name__ == "__main__":
    results = run_metrics()
    # Optionally save results CSV:
    # results.to_csv("metrics_results.csv", index=False)
    # logger("Saved metrics to metrics_results.csv")
