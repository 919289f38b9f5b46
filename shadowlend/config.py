import json, base64, os
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Optional

from dotenv import load_dotenv
from loguru import logger
from solders.keypair import Keypair
from solders.pubkey import Pubkey

from . import pda
from .errors import ConfigError


NETWORKS = {
    "localnet": {"rpc": "http://127.0.0.1:8899", "cluster_offset": 1},
    "devnet": {"rpc": "https://api.devnet.solana.com", "cluster_offset": 456},
    "mainnet": {"rpc": "https://api.mainnet-beta.solana.com", "cluster_offset": None},
}

DEFAULT_NETWORK = "devnet"
SETTINGS_FILE = "wallet.json"
DEPLOYMENT_FILE = "deployment.json"
U32_MAX = (1 << 32) - 1


@dataclass(frozen=True)
class PollPolicy:
    interval: float
    attempts: int

    def __post_init__(self):
        if self.interval < 0 or self.attempts < 1:
            raise ConfigError(f"bad poll policy: interval={self.interval} attempts={self.attempts}")


@dataclass
class DeploymentRecord:
    network: str
    program_id: str
    pool: Optional[str] = None
    collateral_mint: Optional[str] = None
    borrow_mint: Optional[str] = None
    collateral_vault: Optional[str] = None
    borrow_vault: Optional[str] = None
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    _KEYS = {
        "network": "network",
        "program_id": "programId",
        "pool": "poolAddress",
        "collateral_mint": "collateralMint",
        "borrow_mint": "borrowMint",
        "collateral_vault": "collateralVault",
        "borrow_vault": "borrowVault",
        "timestamp": "timestamp",
    }

    @classmethod
    def load(cls, path=DEPLOYMENT_FILE):
        if not os.path.exists(path):
            return None
        with open(path, 'r') as f:
            d = json.load(f)
        if not d.get("programId"):
            raise ConfigError(f"{path}: missing programId")
        kw = {k: d[j] for k, j in cls._KEYS.items() if d.get(j) is not None}
        kw.setdefault("network", DEFAULT_NETWORK)
        return cls(**kw)

    def save(self, path=DEPLOYMENT_FILE):
        data = {j: getattr(self, k) for k, j in self._KEYS.items() if getattr(self, k) is not None}
        with open(path, 'w') as f:
            json.dump(data, f, indent=2)
        logger.info(f"deployment record saved to {path}")
        return path

    def verify(self):
        """Vault and pool addresses in the record must match what derivation gives."""
        program_id = Pubkey.from_string(self.program_id)
        pool = pda.pool_address(program_id)[0]
        problems = []
        if self.pool and self.pool != str(pool):
            problems.append(f"pool {self.pool} != derived {pool}")
        if self.collateral_vault and self.collateral_vault != str(pda.collateral_vault_address(pool, program_id)[0]):
            problems.append(f"collateral vault {self.collateral_vault} does not match pool {pool}")
        if self.borrow_vault and self.borrow_vault != str(pda.borrow_vault_address(pool, program_id)[0]):
            problems.append(f"borrow vault {self.borrow_vault} does not match pool {pool}")
        if problems:
            raise ConfigError("; ".join(problems))
        return True


@dataclass
class Settings:
    network: str = DEFAULT_NETWORK
    rpc_url: str = NETWORKS[DEFAULT_NETWORK]["rpc"]
    program_id: Pubkey = pda.SHADOWLEND_PROGRAM_ID
    cluster_offset: Optional[int] = NETWORKS[DEFAULT_NETWORK]["cluster_offset"]
    mxe_public_key: Optional[bytes] = None
    collateral_mint: Pubkey = pda.WSOL_MINT
    borrow_mint: Pubkey = pda.USDC_MINT
    pool: Optional[Pubkey] = None
    wallet_path: str = SETTINGS_FILE
    key_path: str = ".x25519-key.json"
    confirm_poll: PollPolicy = PollPolicy(2.0, 30)
    pickup_poll: PollPolicy = PollPolicy(2.0, 60)
    callback_poll: PollPolicy = PollPolicy(2.0, 90)

    def addresses(self):
        return pda.ProgramAddresses.derive(self.program_id, self.collateral_mint, self.borrow_mint, self.pool)

    def require_cluster_offset(self):
        if self.cluster_offset is None:
            raise ConfigError(f"no cluster offset configured for {self.network}; set SHADOWLEND_CLUSTER_OFFSET")
        return self.cluster_offset

    def require_mxe_public_key(self):
        if self.mxe_public_key is None:
            raise ConfigError("no MXE x25519 public key configured; set SHADOWLEND_MXE_PUBLIC_KEY")
        return self.mxe_public_key


def parse_cluster_offset(value):
    try:
        n = int(value)
    except (TypeError, ValueError):
        raise ConfigError(f"cluster offset must be an integer, got {value!r}")
    if not 0 <= n <= U32_MAX:
        raise ConfigError(f"cluster offset out of u32 range: {n}")
    return n


def parse_public_key(value):
    if isinstance(value, (bytes, bytearray)):
        raw = bytes(value)
    else:
        try:
            raw = bytes.fromhex(value)
        except ValueError:
            try:
                raw = base64.b64decode(value, validate=True)
            except ValueError:
                raise ConfigError(f"MXE public key is neither hex nor base64: {value!r}")
    if len(raw) != 32:
        raise ConfigError(f"MXE public key must be 32 bytes, got {len(raw)}")
    return raw


def parse_pubkey(value, name):
    try:
        return Pubkey.from_string(value)
    except ValueError:
        raise ConfigError(f"{name} is not a valid address: {value!r}")


def load_settings(path=SETTINGS_FILE, deployment_path=DEPLOYMENT_FILE, env=None):
    """Merge network defaults, deployment record, settings file and environment."""
    if env is None:
        load_dotenv()
        env = os.environ
    d = {}
    if path and os.path.exists(path):
        with open(path, 'r') as f:
            d = json.load(f)
        # a bare keypair array carries no settings
        if not isinstance(d, dict):
            d = {}

    network = env.get("SHADOWLEND_NETWORK") or d.get("network") or DEFAULT_NETWORK
    if network not in NETWORKS:
        raise ConfigError(f"unknown network {network!r}; expected one of {', '.join(NETWORKS)}")
    defaults = NETWORKS[network]
    s = Settings(network=network, rpc_url=defaults["rpc"], cluster_offset=defaults["cluster_offset"], wallet_path=path)

    record = DeploymentRecord.load(deployment_path) if deployment_path else None
    if record:
        if record.network != network:
            logger.warning(f"deployment record is for {record.network}, running on {network}")
        s.program_id = parse_pubkey(record.program_id, "programId")
        if record.pool:
            s.pool = parse_pubkey(record.pool, "poolAddress")
        if record.collateral_mint:
            s.collateral_mint = parse_pubkey(record.collateral_mint, "collateralMint")
        if record.borrow_mint:
            s.borrow_mint = parse_pubkey(record.borrow_mint, "borrowMint")

    rpc = env.get("SHADOWLEND_RPC_URL") or d.get("rpc")
    if rpc:
        s.rpc_url = rpc
    program_id = env.get("SHADOWLEND_PROGRAM_ID") or d.get("programId")
    if program_id:
        s.program_id = parse_pubkey(program_id, "programId")
    offset = env.get("SHADOWLEND_CLUSTER_OFFSET", d.get("clusterOffset"))
    if offset is not None:
        s.cluster_offset = parse_cluster_offset(offset)
    mxe = env.get("SHADOWLEND_MXE_PUBLIC_KEY") or d.get("mxePublicKey")
    if mxe:
        s.mxe_public_key = parse_public_key(mxe)
    if d.get("keyFile"):
        s.key_path = d["keyFile"]

    if not s.rpc_url.startswith('https://') and '127.0.0.1' not in s.rpc_url and 'localhost' not in s.rpc_url:
        logger.warning(f"using insecure HTTP connection to {s.rpc_url}")
    return s


def load_wallet(path=SETTINGS_FILE):
    """Solana keypair from a 64-byte JSON array or a {"priv": base64 seed} document."""
    if not os.path.exists(path):
        raise ConfigError(f"{path} not found")
    with open(path, 'r') as f:
        d = json.load(f)
    if isinstance(d, list):
        if len(d) != 64:
            raise ConfigError(f"{path}: keypair array must hold 64 bytes, got {len(d)}")
        return Keypair.from_bytes(bytes(d))
    priv = d.get('priv') if isinstance(d, dict) else None
    if not priv:
        raise ConfigError(f"{path}: no 'priv' key")
    seed = base64.b64decode(priv)
    if len(seed) < 32:
        raise ConfigError(f"{path}: private key seed is {len(seed)} bytes")
    return Keypair.from_seed(seed[:32])


def create_wallet(path=SETTINGS_FILE, network=DEFAULT_NETWORK):
    kp = Keypair()
    wallet_data = {
        "priv": base64.b64encode(bytes(kp)[:32]).decode(),
        "addr": str(kp.pubkey()),
        "network": network,
        "rpc": NETWORKS[network]["rpc"],
    }
    old_umask = os.umask(0o077)
    try:
        with open(path, 'w') as f:
            json.dump(wallet_data, f, indent=2)
    finally:
        os.umask(old_umask)
    os.chmod(path, 0o600)
    return path, kp
