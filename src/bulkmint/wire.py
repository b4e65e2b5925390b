"""Transaction message compilation and signing.

Message layout and account ordering are delegated to ``solders``: fee payer first,
then writable signers, readonly signers, writable non-signers and readonly
non-signers. Signatures come from the signer registry's keys and are attached in
the message's signer order.
"""

import base64

from solders.hash import Hash
from solders.instruction import AccountMeta as SdkAccountMeta
from solders.instruction import Instruction as SdkInstruction
from solders.message import Message
from solders.signature import Signature
from solders.transaction import Transaction

from bulkmint.layouts import pubkey_of
from bulkmint.models import Instruction
from bulkmint.signers import SignerIdentity

MAX_ACCOUNT_KEYS = 256


def account_count(payer: str, instructions: list[Instruction]) -> int:
    keys = {payer}
    for ix in instructions:
        keys.add(ix.program_id)
        keys.update(m.pubkey for m in ix.accounts)
    return len(keys)


def to_sdk(ix: Instruction) -> SdkInstruction:
    accounts = [SdkAccountMeta(pubkey_of(m.pubkey), m.is_signer, m.is_writable) for m in ix.accounts]
    return SdkInstruction(pubkey_of(ix.program_id), ix.data, accounts)


def build_message(payer: str, instructions: list[Instruction], checkpoint: str | None = None) -> Message:
    """Compile ``instructions`` for ``payer``; an unbound checkpoint is zeroed for sizing."""
    n = account_count(payer, instructions)
    if n > MAX_ACCOUNT_KEYS:
        raise ValueError(f"Too many accounts in one message ({n})")
    blockhash = Hash.from_string(checkpoint) if checkpoint else Hash.default()
    return Message.new_with_blockhash([to_sdk(ix) for ix in instructions], pubkey_of(payer), blockhash)


def signer_keys(message: Message) -> list[str]:
    return [str(k) for k in message.account_keys[:message.header.num_required_signatures]]


def transaction_size(payer: str, instructions: list[Instruction]) -> int:
    """Serialized size of a fully signed transaction carrying ``instructions``."""
    msg = build_message(payer, instructions)
    n = msg.header.num_required_signatures
    return len(bytes(Transaction.populate(msg, [Signature.default()] * n)))


def sign_message(message: Message, signers: list[SignerIdentity]) -> Transaction:
    """Attach signatures in signer-key order; every required signer must be present."""
    by_address = {s.address: s for s in signers}
    keys = signer_keys(message)
    missing = [k for k in keys if k not in by_address]
    if missing:
        raise ValueError(f"Missing signatures for {', '.join(missing)}")
    payload = bytes(message)
    return Transaction.populate(message, [Signature.from_bytes(by_address[k].sign(payload)) for k in keys])


def encode_wire(wire: bytes) -> str:
    return base64.b64encode(wire).decode()
