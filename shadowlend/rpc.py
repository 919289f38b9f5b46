import json, base64, asyncio, ssl
import aiohttp
from loguru import logger
from solders.hash import Hash
from solders.message import Message
from solders.transaction import Transaction

from .errors import LedgerError, extract_error, program_error_from


COMMITMENT = "confirmed"


class RpcClient:
    """JSON-RPC ledger adapter over one aiohttp session.

    The session is opened lazily and belongs to whoever created the client.
    """

    def __init__(self, url, timeout=10, commitment=COMMITMENT):
        self.url = url
        self.timeout = timeout
        self.commitment = commitment
        self.session = None
        self._rpc_id = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        await self.close()

    async def close(self):
        if self.session:
            await self.session.close()
            self.session = None

    def _open(self):
        if not self.session:
            ssl_context = ssl.create_default_context()
            connector = aiohttp.TCPConnector(ssl=ssl_context, force_close=True)
            self.session = aiohttp.ClientSession(
                timeout=aiohttp.ClientTimeout(total=self.timeout),
                connector=connector,
                json_serialize=json.dumps
            )
        return self.session

    async def rpc_call(self, method, params=None, t=None):
        session = self._open()
        self._rpc_id += 1
        payload = {"jsonrpc": "2.0", "method": method, "params": params or [], "id": self._rpc_id}
        logger.debug(f"rpc {method} #{self._rpc_id}")
        kw = {"timeout": aiohttp.ClientTimeout(total=t)} if t else {}
        try:
            async with session.post(self.url, json=payload, **kw) as resp:
                j = json.loads(await resp.text())
                if "result" in j:
                    return True, j["result"]
                elif "error" in j:
                    return False, j
                return False, "unknown rpc response"
        except asyncio.TimeoutError:
            return False, "timeout"
        except (aiohttp.ClientError, ValueError) as e:
            return False, str(e)

    async def _call(self, method, params=None, t=None):
        ok, result = await self.rpc_call(method, params, t)
        if ok:
            return result
        if isinstance(result, dict):
            err = result.get("error", {})
            data = err.get("data") if isinstance(err, dict) else None
            # preflight failures carry the transaction error in data.err
            if isinstance(data, dict) and data.get("err") is not None:
                raise program_error_from(data["err"])
            raise LedgerError(f"{method}: {extract_error(result)}", result)
        raise LedgerError(f"{method}: {result}")

    async def get_account_data(self, address):
        result = await self._call("getAccountInfo", [str(address), {"encoding": "base64", "commitment": self.commitment}])
        value = result.get("value") if isinstance(result, dict) else None
        if not value:
            return None
        return base64.b64decode(value["data"][0])

    async def account_exists(self, address):
        return await self.get_account_data(address) is not None

    async def latest_blockhash(self):
        result = await self._call("getLatestBlockhash", [{"commitment": self.commitment}])
        return Hash.from_string(result["value"]["blockhash"])

    async def send_instructions(self, instructions, signers):
        blockhash = await self.latest_blockhash()
        payer = signers[0].pubkey()
        message = Message.new_with_blockhash(instructions, payer, blockhash)
        tx = Transaction(signers, message, blockhash)
        raw = base64.b64encode(bytes(tx)).decode()
        sig = await self._call("sendTransaction", [raw, {"encoding": "base64", "preflightCommitment": self.commitment}], 30)
        logger.debug(f"sent {sig}")
        return sig

    async def signature_status(self, signature):
        result = await self._call("getSignatureStatuses", [[str(signature)], {"searchTransactionHistory": True}])
        value = result.get("value") or [None]
        return value[0]

    async def recent_failures(self, address, limit=10):
        result = await self._call("getSignaturesForAddress", [str(address), {"limit": limit, "commitment": self.commitment}])
        return [s for s in result or [] if s.get("err") is not None]
