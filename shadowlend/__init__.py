from .ciphers import KeyMaterial, EncryptedValue, derive_shared_secret, encrypt, decrypt
from .codec import Operation, encode_instruction, decode_instruction
from .config import Settings, PollPolicy, DeploymentRecord, load_settings, load_wallet
from .gateway import ClientContext, ComputationGateway, ComputationOutcome, OperationRequest, State
from .client import ShadowLendClient
from .rpc import RpcClient
from .state import ObligationStateTracker
from . import errors, pda

__version__ = "0.3.0"
