#!/usr/bin/env python3
"""
shadowlend terminal client
confidential deposit / borrow / withdraw / repay / spend / liquidate
"""


import sys, re, os, shutil, asyncio, threading, signal
from datetime import datetime
from concurrent.futures import ThreadPoolExecutor

from loguru import logger
from solders.pubkey import Pubkey

from shadowlend import ClientContext, RpcClient, ShadowLendClient, load_settings, load_wallet
from shadowlend.ciphers import load_or_create_key_material
from shadowlend.config import create_wallet
from shadowlend.errors import ShadowLendError


c = {'r': '\033[0m', 'b': '\033[34m', 'c': '\033[36m', 'g': '\033[32m', 'y': '\033[33m', 'R': '\033[31m', 'B': '\033[1m', 'bg': '\033[44m', 'bgr': '\033[41m', 'bgg': '\033[42m', 'w': '\033[37m'}

# base units per token (6 decimals, as USDC)
μ = 1_000_000
b58 = re.compile(r"^[1-9A-HJ-NP-Za-km-z]{32,44}$")
executor = ThreadPoolExecutor(max_workers=1)
stop_flag = threading.Event()
spinner_frames = ['-', '\\', '|', '/']
spinner_idx = 0

OPS = {
    '1': ("deposit", "collateral to deposit:"),
    '2': ("borrow", "amount to borrow:"),
    '3': ("withdraw", "collateral to withdraw:"),
    '4': ("repay", "amount to repay:"),
    '5': ("spend", "amount to spend:"),
}


def cls():
    os.system('cls' if os.name == 'nt' else 'clear')

def sz():
    return shutil.get_terminal_size((80, 25))

def at(x, y, t, cl=''):
    print(f"\033[{y};{x}H{c['bg']}{cl}{t}{c['bg']}", end='')

async def ainp(x, y):
    print(f"\033[{y};{x}H", end='', flush=True)
    try:
        return await asyncio.get_event_loop().run_in_executor(executor, input)
    except EOFError:
        stop_flag.set()
        return ''

async def awaitkey():
    cr = sz()
    msg = "press enter to continue..."
    msg_len = len(msg)
    y_pos = cr[1] - 2
    x_pos = max(2, (cr[0] - msg_len) // 2)
    at(x_pos, y_pos, msg, c['y'])
    print(f"\033[{y_pos};{x_pos + msg_len}H{c['bg']}", end='', flush=True)
    try:
        await asyncio.get_event_loop().run_in_executor(executor, input)
    except EOFError:
        stop_flag.set()

def fill():
    cr = sz()
    print(f"{c['bg']}", end='')
    for _ in range(cr[1]):
        print(" " * cr[0])
    print("\033[H", end='')

def box(x, y, w, h, t=""):
    print(f"\033[{y};{x}H{c['bg']}{c['w']}┌{'─' * (w - 2)}┐{c['bg']}")
    if t:
        print(f"\033[{y};{x}H{c['bg']}{c['w']}┤ {c['B']}{t} {c['w']}├{c['bg']}")
    for i in range(1, h - 1):
        print(f"\033[{y + i};{x}H{c['bg']}{c['w']}│{' ' * (w - 2)}│{c['bg']}")
    print(f"\033[{y + h - 1};{x}H{c['bg']}{c['w']}└{'─' * (w - 2)}┘{c['bg']}")

async def spin_animation(x, y, msg):
    global spinner_idx
    try:
        while True:
            at(x, y, f"{c['c']}{spinner_frames[spinner_idx]} {msg}", c['c'])
            spinner_idx = (spinner_idx + 1) % len(spinner_frames)
            await asyncio.sleep(0.1)
    except asyncio.CancelledError:
        at(x, y, " " * (len(msg) + 3), "")


def fmt_amount(v):
    return "encrypted" if v is None else f"{v / μ:.6f}"

def parse_amount(s):
    if not s or not re.match(r"^\d+(\.\d+)?$", s) or float(s) <= 0:
        return None
    return int(round(float(s) * μ))


def ld():
    settings = load_settings()
    if not os.path.exists(settings.wallet_path):
        wp, kp = create_wallet(settings.wallet_path, settings.network)
        print(f"new wallet created: {kp.pubkey()}")
        print(f"saved to: {wp}")
        settings = load_settings(wp)
    payer = load_wallet(settings.wallet_path)
    keys, created = load_or_create_key_material(settings.key_path, payer)
    if created:
        print(f"new x25519 key saved to {settings.key_path}")
    ctx = ClientContext(RpcClient(settings.rpc_url), payer, settings, keys)
    return ctx


def menu(x, y, w, h):
    box(x, y, w, h, "commands")
    at(x + 2, y + 2, "[1] deposit", c['w'])
    at(x + 2, y + 3, "[2] borrow", c['y'])
    at(x + 2, y + 4, "[3] withdraw", c['y'])
    at(x + 2, y + 5, "[4] repay", c['w'])
    at(x + 2, y + 6, "[5] spend", c['y'])
    at(x + 2, y + 7, "[6] liquidate", c['R'])
    at(x + 2, y + 8, "[7] refresh", c['w'])
    at(x + 2, y + 9, "[0] exit", c['w'])
    at(x + 2, y + h - 2, "command: ", c['B'] + c['y'])

async def expl(client, x, y, w, hb):
    box(x, y, w, hb, "position")
    ctx = client.ctx
    at(x + 2, y + 2, f"wallet:     {ctx.payer_pubkey}", c['w'])
    at(x + 2, y + 3, f"obligation: {client.obligation_address()}", c['w'])
    at(x + 2, y + 4, "─" * (w - 4), c['w'])
    try:
        record, balances = await client.position()
        pool = await client.pool()
    except ShadowLendError as e:
        at(x + 2, y + 6, f"error: {e}"[:w - 4], c['R'])
        return
    if pool:
        at(x + 2, y + 5, f"pool ltv {pool.ltv_bps / 100:.2f}%  liq {pool.liquidation_threshold / 100:.2f}%  deposits {pool.total_deposits / μ:.6f}", c['c'])
    else:
        at(x + 2, y + 5, "pool not initialized", c['R'])
    if record is None:
        at(x + 2, y + 7, "no obligation yet (deposit to open one)", c['y'])
        return
    at(x + 2, y + 7, f"state nonce: {record.state_nonce}", c['g'])
    at(x + 2, y + 8, f"state hash:  {record.state_hash.hex()[:32]}..", c['w'])
    row = y + 10
    for name in ("deposit", "debt", "internal_balance"):
        at(x + 2, row, f"{name:<17}{fmt_amount(balances.get(name))}", c['y'])
        row += 1

async def scr(client):
    cr = sz()
    cls()
    fill()
    t = f" shadowlend {client.ctx.settings.network} │ arcium MPC │ {datetime.now().strftime('%H:%M:%S')} "
    at((cr[0] - len(t)) // 2, 1, t, c['B'] + c['w'])

    sidebar_w = 28
    menu(2, 3, sidebar_w, 13)

    info_y = 17
    box(2, info_y, sidebar_w, 8)
    at(4, info_y + 2, client.ctx.settings.network.upper(), c['R'])
    at(4, info_y + 3, f"cluster {client.ctx.settings.cluster_offset}", c['y'])
    at(4, info_y + 4, "X25519 ECDH + AES-GCM", c['g'])
    at(4, info_y + 5, "nonce-tracked callbacks", c['g'])

    explorer_x = sidebar_w + 4
    explorer_w = cr[0] - explorer_x - 2
    await expl(client, explorer_x, 3, explorer_w, cr[1] - 6)

    at(2, cr[1] - 1, " " * (cr[0] - 4), c['bg'])
    at(2, cr[1] - 1, "ready", c['bgg'] + c['w'])
    return await ainp(12, 14)


async def show_outcome(x, y, w, outcome):
    if outcome.finalized:
        at(x + 2, y, f"{outcome.operation.value} finalized (nonce {outcome.nonce_before} -> {outcome.nonce_after})", c['bgg'] + c['w'])
    elif outcome.timed_out:
        at(x + 2, y, f"timed out at {outcome.stage}; re-check position later", c['bgr'] + c['w'])
    else:
        at(x + 2, y, f"rejected: {outcome.error}"[:w - 4], c['bgr'] + c['w'])
    if outcome.signature:
        at(x + 2, y + 1, f"tx: {outcome.signature[:60]}", c['g'])


async def operation_ui(client, cmd):
    name, prompt = OPS[cmd]
    cr = sz()
    cls()
    fill()
    w, hb = 70, 16
    x = (cr[0] - w) // 2
    y = (cr[1] - hb) // 2
    box(x, y, w, hb, name)

    at(x + 2, y + 2, prompt, c['y'])
    amount = parse_amount(await ainp(x + 4 + len(prompt), y + 2))
    if amount is None:
        return
    kw = {}
    if name == "spend":
        at(x + 2, y + 4, "destination token account (empty = own):", c['y'])
        dest = (await ainp(x + 44, y + 4)).strip()
        if dest:
            if not b58.match(dest):
                at(x + 2, y + 6, "invalid address", c['R'])
                await awaitkey()
                return
            kw["destination"] = Pubkey.from_string(dest)

    at(x + 2, y + 6, f"{name} {amount / μ:.6f}? [y/n]:", c['B'])
    if (await ainp(x + 30, y + 6)).strip().lower() != 'y':
        return

    spin_task = asyncio.create_task(spin_animation(x + 2, y + 8, "waiting for MPC callback"))
    try:
        outcome = await getattr(client, name)(amount, **kw)
        error = None
    except ShadowLendError as e:
        outcome, error = None, e
    spin_task.cancel()
    try: await spin_task
    except asyncio.CancelledError: pass

    if error:
        at(x + 2, y + 8, f"error: {error}"[:w - 4], c['bgr'] + c['w'])
    else:
        await show_outcome(x, y + 8, w, outcome)
    await awaitkey()


async def liquidate_ui(client):
    cr = sz()
    cls()
    fill()
    w, hb = 80, 18
    x = (cr[0] - w) // 2
    y = (cr[1] - hb) // 2
    box(x, y, w, hb, "liquidate")

    at(x + 2, y + 2, "victim wallet:", c['y'])
    victim = (await ainp(x + 17, y + 2)).strip()
    if not b58.match(victim):
        return
    at(x + 2, y + 3, "victim x25519 key (hex):", c['y'])
    vkey = (await ainp(x + 27, y + 3)).strip()
    if not re.match(r"^[0-9a-fA-F]{64}$", vkey):
        at(x + 2, y + 5, "key must be 32 bytes hex", c['R'])
        await awaitkey()
        return
    at(x + 2, y + 4, "repay amount:", c['y'])
    amount = parse_amount(await ainp(x + 16, y + 4))
    if amount is None:
        return

    spin_task = asyncio.create_task(spin_animation(x + 2, y + 7, "liquidating"))
    try:
        outcome = await client.liquidate(Pubkey.from_string(victim), bytes.fromhex(vkey), amount)
        error = None
    except ShadowLendError as e:
        outcome, error = None, e
    spin_task.cancel()
    try: await spin_task
    except asyncio.CancelledError: pass

    if error:
        at(x + 2, y + 7, f"error: {error}"[:w - 4], c['bgr'] + c['w'])
    else:
        await show_outcome(x, y + 7, w, outcome)
    await awaitkey()


def signal_handler(sig, frame):
    stop_flag.set()
    sys.exit(0)

async def main():
    signal.signal(signal.SIGINT, signal_handler)
    signal.signal(signal.SIGTERM, signal_handler)

    logger.remove()
    logger.add("shadowlend.log", level="DEBUG", rotation="5 MB")

    try:
        ctx = ld()
    except ShadowLendError as e:
        sys.exit(f"[!] {e}")

    async with ctx:
        client = ShadowLendClient(ctx)
        try:
            while not stop_flag.is_set():
                cmd = await scr(client)

                if cmd in OPS:
                    await operation_ui(client, cmd)
                elif cmd == '6':
                    await liquidate_ui(client)
                elif cmd == '7':
                    continue
                elif cmd in ['0', 'q', '']:
                    break
        finally:
            executor.shutdown(wait=False)

def main_sync():
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
    finally:
        cls()
        print(f"{c['r']}")

if __name__ == "__main__":
    main_sync()
