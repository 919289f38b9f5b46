#!/usr/bin/env python3

import sys, time
import requests

from shadowlend import load_settings, load_wallet, pda
from shadowlend.ciphers import load_or_create_key_material
from shadowlend.errors import ShadowLendError


def account_exists(rpc_url, address):
    r = requests.post(rpc_url, json={
        "jsonrpc": "2.0",
        "method": "getAccountInfo",
        "params": [str(address), {"encoding": "base64"}],
        "id": 1
    }, timeout=30)
    j = r.json()
    if "error" in j:
        raise RuntimeError(j["error"].get("message", "rpc error"))
    return j["result"]["value"] is not None


def main():
    try:
        settings = load_settings()
        payer = load_wallet(settings.wallet_path)
    except ShadowLendError as e:
        print(f"error: {e}")
        return 1

    addrs = settings.addresses()
    print(f"network: {settings.network}")
    print(f"rpc: {settings.rpc_url}")
    print(f"program: {settings.program_id}")
    print(f"wallet: {payer.pubkey()}")

    keys, created = load_or_create_key_material(settings.key_path, payer)
    print(f"x25519 key {'created' if created else 'loaded'}: {settings.key_path}")
    print(f"x25519 pubkey: {keys.public_key.hex()}")

    checks = [("pool", addrs.pool), ("mxe", addrs.mxe)]
    checks += [(f"comp def {n}", pda.comp_def_address(n, settings.program_id)[0]) for n in pda.COMP_DEF_NAMES]
    if settings.cluster_offset is not None:
        checks.append((f"cluster {settings.cluster_offset}", pda.cluster_address(settings.cluster_offset)[0]))
    else:
        print("cluster offset: not configured")

    t0 = time.time()
    missing = 0
    for name, address in checks:
        try:
            ok = account_exists(settings.rpc_url, address)
        except (requests.RequestException, RuntimeError, ValueError) as e:
            print(f"\nfailed: {e}")
            return 1
        print(f"  {'ok     ' if ok else 'MISSING'} {name:<20} {address}")
        missing += not ok
    print(f"checked {len(checks)} accounts ({time.time() - t0:.1f}s)")

    obligation = addrs.obligation(payer.pubkey())
    try:
        has_obligation = account_exists(settings.rpc_url, obligation)
    except (requests.RequestException, RuntimeError, ValueError) as e:
        print(f"\nfailed: {e}")
        return 1
    print(f"obligation: {obligation} ({'open' if has_obligation else 'opens on first deposit'})")
    if settings.mxe_public_key is None:
        print("\nwarning: no MXE public key configured; borrow/withdraw/spend will fail")
    if missing:
        print(f"\n{missing} required account(s) missing")
        return 1
    print("\nready")
    return 0


if __name__ == "__main__":
    sys.exit(main())
