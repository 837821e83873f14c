# ledger.py
"""
Thin async client over the Solana RPC node: read accounts, enumerate program
accounts, derive PDAs, sign + submit + confirm transactions.

Pure I/O. Every call is bounded by a timeout and failures surface as
LedgerError subclasses; nothing here knows about rounds or payouts.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, List, Optional, Sequence, Tuple

import base58 as _b58
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Commitment, Confirmed
from solana.rpc.types import MemcmpOpts, TxOpts
from solders.hash import Hash
from solders.instruction import Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import Transaction

from instructions import find_address

LOGGER = logging.getLogger("flipsol.ledger")

_CODE_PATTERNS = (
    re.compile(r"custom program error:\s*0x([0-9a-fA-F]+)"),
    re.compile(r"Custom\((\d+)\)"),
    re.compile(r"Error Number:\s*(\d+)"),
)


class LedgerError(Exception):
    """Base class for anything that went wrong talking to the node."""


class LedgerTimeout(LedgerError):
    pass


class SubmissionError(LedgerError):
    def __init__(
        self,
        message: str,
        *,
        code: Optional[int] = None,
        logs: Sequence[str] = (),
        signature: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.logs = tuple(logs)
        self.signature = signature

    def text(self) -> str:
        """Message plus program logs, for signature matching."""
        return "\n".join((self.message, *self.logs))


@dataclass(frozen=True)
class AccountSnapshot:
    address: Pubkey
    data: bytes
    owner: Optional[Pubkey] = None
    lamports: int = 0


# ---------------- Keys ----------------
def load_keypair(secret: str) -> Keypair:
    """
    Accepts a JSON byte array (solana-keygen file contents) or base58.
    64 bytes = full keypair, 32 bytes = seed.
    """
    if not secret or not secret.strip():
        raise ValueError("Empty secret key provided")
    secret = secret.strip()
    if secret.startswith("["):
        try:
            raw = bytes(json.loads(secret))
        except (ValueError, TypeError) as e:
            raise ValueError(f"Could not parse JSON secret key: {e}") from e
    else:
        try:
            raw = _b58.b58decode(secret)
        except ValueError as e:
            raise ValueError(f"Could not decode base58 secret key: {e}") from e

    if len(raw) == 64:
        try:
            return Keypair.from_bytes(raw)
        except ValueError:
            return Keypair.from_seed(raw[:32])
    if len(raw) == 32:
        return Keypair.from_seed(raw)
    raise ValueError(f"Invalid secret key length: {len(raw)} (expected 32 or 64 bytes)")


def to_public_key(addr: Any) -> Pubkey:
    if addr is None:
        raise ValueError("Empty public key provided")
    if isinstance(addr, Pubkey):
        return addr
    if isinstance(addr, (bytes, bytearray)):
        return Pubkey.from_bytes(bytes(addr))
    if isinstance(addr, str):
        return Pubkey.from_string(addr.strip())
    raise ValueError(f"Unsupported public key type: {type(addr).__name__}")


# ---------------- Error parsing ----------------
def extract_error_code(text: str) -> Optional[int]:
    for i, pattern in enumerate(_CODE_PATTERNS):
        m = pattern.search(text or "")
        if m:
            return int(m.group(1), 16) if i == 0 else int(m.group(1))
    return None


def _rpc_error_logs(exc: BaseException) -> List[str]:
    # RPCException(SendTransactionPreflightFailureMessage) carries simulation logs
    for arg in getattr(exc, "args", ()):
        data = getattr(arg, "data", None)
        logs = getattr(data, "logs", None)
        if logs:
            return [str(line) for line in logs]
        if isinstance(arg, dict):
            logs = ((arg.get("data") or {}).get("logs")) or []
            if logs:
                return [str(line) for line in logs]
    return []


def submission_error_from(exc: BaseException, signature: Optional[str] = None) -> SubmissionError:
    if isinstance(exc, SubmissionError):
        return exc
    logs = _rpc_error_logs(exc)
    message = str(exc) or type(exc).__name__
    code = extract_error_code("\n".join([message, *logs]))
    return SubmissionError(message, code=code, logs=logs, signature=signature)


def _normalize_sig(resp: Any) -> str:
    if isinstance(resp, dict):
        sig = resp.get("result") or resp.get("signature")
        return str(sig or resp)
    return str(getattr(resp, "value", None) or resp)


# ---------------- Client ----------------
class LedgerClient:
    def __init__(
        self,
        rpc_url: str,
        program_id: Pubkey,
        *,
        timeout: float = 10.0,
        confirm_timeout: float = 45.0,
        commitment: Commitment = Confirmed,
        client: Optional[AsyncClient] = None,
    ) -> None:
        self.rpc_url = rpc_url
        self.program_id = program_id
        self.timeout = timeout
        self.confirm_timeout = confirm_timeout
        self.commitment = commitment
        self._client = client or AsyncClient(rpc_url, commitment=commitment)

    async def close(self) -> None:
        await self._client.close()

    async def _bounded(self, coro, what: str, timeout: Optional[float] = None):
        try:
            return await asyncio.wait_for(coro, timeout=timeout or self.timeout)
        except asyncio.TimeoutError as e:
            raise LedgerTimeout(f"{what} timed out after {timeout or self.timeout:.1f}s") from e

    def derive_address(self, *seeds: bytes) -> Pubkey:
        return find_address(self.program_id, *seeds)

    async def read_account(self, address: Pubkey) -> Optional[AccountSnapshot]:
        try:
            resp = await self._bounded(
                self._client.get_account_info(address, commitment=self.commitment),
                f"getAccountInfo {address}",
            )
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"getAccountInfo {address} failed: {e}") from e

        value = getattr(resp, "value", None)
        if value is None:
            return None
        return AccountSnapshot(
            address=address,
            data=bytes(value.data),
            owner=getattr(value, "owner", None),
            lamports=int(getattr(value, "lamports", 0) or 0),
        )

    async def program_accounts(
        self,
        data_size: Optional[int],
        memcmp: Sequence[Tuple[int, str]] = (),
    ) -> List[AccountSnapshot]:
        filters: List[Any] = [MemcmpOpts(offset=offset, bytes=b58) for offset, b58 in memcmp]
        if data_size is not None:
            filters.insert(0, int(data_size))
        try:
            resp = await self._bounded(
                self._client.get_program_accounts(
                    self.program_id,
                    commitment=self.commitment,
                    encoding="base64",
                    filters=filters,
                ),
                "getProgramAccounts",
            )
        except LedgerError:
            raise
        except Exception as e:
            raise LedgerError(f"getProgramAccounts failed: {e}") from e

        out: List[AccountSnapshot] = []
        for keyed in getattr(resp, "value", None) or []:
            account = keyed.account
            out.append(AccountSnapshot(
                address=keyed.pubkey,
                data=bytes(account.data),
                owner=getattr(account, "owner", None),
                lamports=int(getattr(account, "lamports", 0) or 0),
            ))
        return out

    async def _latest_blockhash(self) -> Hash:
        resp = await self._bounded(
            self._client.get_latest_blockhash(commitment=self.commitment),
            "getLatestBlockhash",
        )
        value = getattr(resp, "value", None)
        if value is None or getattr(value, "blockhash", None) is None:
            raise LedgerError("Could not fetch latest blockhash")
        return value.blockhash

    async def submit(self, instructions: Sequence[Instruction], signer: Keypair) -> str:
        """Sign with `signer` (also fee payer) and send. Returns the signature."""
        try:
            blockhash = await self._latest_blockhash()
            message = Message.new_with_blockhash(list(instructions), signer.pubkey(), blockhash)
            tx = Transaction([signer], message, blockhash)
            resp = await self._bounded(
                self._client.send_raw_transaction(
                    bytes(tx),
                    opts=TxOpts(skip_preflight=False, preflight_commitment=self.commitment),
                ),
                "sendTransaction",
            )
        except LedgerTimeout:
            raise
        except Exception as e:
            raise submission_error_from(e) from e
        return _normalize_sig(resp)

    async def confirm(self, signature: str) -> None:
        """Wait for `signature` to reach the client commitment; raise if it failed."""
        try:
            resp = await self._bounded(
                self._client.confirm_transaction(
                    Signature.from_string(signature), commitment=self.commitment
                ),
                f"confirm {signature[:8]}",
                timeout=self.confirm_timeout,
            )
        except LedgerTimeout:
            raise
        except Exception as e:
            raise submission_error_from(e, signature) from e

        statuses = getattr(resp, "value", None) or []
        status = statuses[0] if statuses else None
        err = getattr(status, "err", None)
        if err is not None:
            text = str(err)
            raise SubmissionError(
                f"transaction {signature} failed: {text}",
                code=extract_error_code(text),
                signature=signature,
            )

    async def submit_and_confirm(self, instructions: Sequence[Instruction], signer: Keypair) -> str:
        signature = await self.submit(instructions, signer)
        await self.confirm(signature)
        return signature
