"""Signer identities, the signing context and signer-set resolution.

Key material is held as ``xrpl.wallet.Wallet`` objects using ED25519 keys; the
public identity string is the base58 encoding of the raw 32-byte public key.
Private material never appears in ``repr`` or logs.
"""

import json
import logging
from dataclasses import dataclass, field
from pathlib import Path

import base58
from xrpl import CryptoAlgorithm
from xrpl.core.keypairs import sign
from xrpl.wallet import Wallet

import bulkmint.constants as C
from bulkmint.errors import ConfigurationError, MissingSignerError
from bulkmint.models import TransactionBatch

log = logging.getLogger("bulkmint.signers")

ED_PREFIX = "ED"


def public_key_bytes(wallet: Wallet) -> bytes:
    return bytes.fromhex(wallet.public_key[len(ED_PREFIX):])


def address_of(wallet: Wallet) -> str:
    return base58.b58encode(public_key_bytes(wallet)).decode()


def short(address: str) -> str:
    return f"{address[:4]}..{address[-4:]}"


@dataclass(frozen=True, slots=True)
class SignerIdentity:
    role: C.SignerRole
    address: str
    wallet: Wallet = field(repr=False, compare=False, hash=False)

    @classmethod
    def from_wallet(cls, wallet: Wallet, role: C.SignerRole) -> "SignerIdentity":
        if not wallet.public_key.upper().startswith(ED_PREFIX):
            raise ConfigurationError(f"{role} key must be ED25519")
        return cls(role=role, address=address_of(wallet), wallet=wallet)

    @classmethod
    def generate(cls, role: C.SignerRole = C.SignerRole.EPHEMERAL) -> "SignerIdentity":
        return cls.from_wallet(Wallet.create(algorithm=CryptoAlgorithm.ED25519), role)

    def with_role(self, role: C.SignerRole) -> "SignerIdentity":
        return SignerIdentity(role=role, address=self.address, wallet=self.wallet)

    def sign(self, message: bytes) -> bytes:
        return bytes.fromhex(sign(message, self.wallet.private_key))

    def __str__(self):
        return f"{self.role}({short(self.address)})"


def load_keypair(path: str | Path) -> Wallet:
    """Load an ED25519 keypair file.

    Accepts a JSON array of 64 byte values (32-byte secret then 32-byte public key),
    a JSON object with a ``seed`` field, or a bare seed string.
    """
    p = Path(path).expanduser()
    if not p.is_file():
        raise ConfigurationError(f"Keypair file {p} does not exist")
    text = p.read_text().strip()
    try:
        data = json.loads(text)
    except json.JSONDecodeError:
        data = text

    if isinstance(data, list):
        raw = bytes(data)
        if len(raw) != 64:
            raise ConfigurationError(f"Keypair file {p} must hold 64 bytes, got {len(raw)}")
        return Wallet(
            public_key=ED_PREFIX + raw[32:].hex().upper(),
            private_key=ED_PREFIX + raw[:32].hex().upper(),
        )
    seed = data.get("seed") if isinstance(data, dict) else data
    if not isinstance(seed, str) or not seed:
        raise ConfigurationError(f"Keypair file {p} has no usable seed")
    return Wallet.from_seed(seed, algorithm=CryptoAlgorithm.ED25519)


@dataclass(frozen=True, slots=True)
class SigningContext:
    """Explicit signer roles threaded through planning and submission."""

    payer: SignerIdentity
    update_authority: SignerIdentity
    mint_authority: SignerIdentity
    account_authority: SignerIdentity

    @classmethod
    def single(cls, operator: SignerIdentity) -> "SigningContext":
        return cls(
            payer=operator.with_role(C.SignerRole.PAYER),
            update_authority=operator.with_role(C.SignerRole.UPDATE_AUTHORITY),
            mint_authority=operator.with_role(C.SignerRole.MINT_AUTHORITY),
            account_authority=operator.with_role(C.SignerRole.ACCOUNT_AUTHORITY),
        )

    @classmethod
    def from_keyfiles(
        cls,
        keypair: str | Path,
        *,
        update_authority: str | Path | None = None,
        mint_authority: str | Path | None = None,
        account_authority: str | Path | None = None,
    ) -> "SigningContext":
        """Every role defaults to the operator keypair when no override is given."""
        operator = load_keypair(keypair)

        def _role(path, role):
            w = load_keypair(path) if path else operator
            return SignerIdentity.from_wallet(w, role)

        return cls(
            payer=SignerIdentity.from_wallet(operator, C.SignerRole.PAYER),
            update_authority=_role(update_authority, C.SignerRole.UPDATE_AUTHORITY),
            mint_authority=_role(mint_authority, C.SignerRole.MINT_AUTHORITY),
            account_authority=_role(account_authority, C.SignerRole.ACCOUNT_AUTHORITY),
        )

    def identities(self) -> list[SignerIdentity]:
        return [self.payer, self.update_authority, self.mint_authority, self.account_authority]


class SignerRegistry:
    """Holds key material references and resolves the signer set of a batch."""

    def __init__(self, context: SigningContext) -> None:
        self.context = context
        self._by_address: dict[str, SignerIdentity] = {}
        for identity in context.identities():
            self._by_address.setdefault(identity.address, identity)

    def ephemeral(self) -> SignerIdentity:
        """Create a fresh keypair for an account allocated during planning."""
        identity = SignerIdentity.generate()
        self._by_address[identity.address] = identity
        log.debug("New ephemeral signer %s", identity)
        return identity

    def lookup(self, address: str) -> SignerIdentity | None:
        return self._by_address.get(address)

    def forget(self, addresses) -> None:
        """Drop ephemeral identities once their batch is final."""
        for a in addresses:
            ident = self._by_address.get(a)
            if ident is not None and ident.role == C.SignerRole.EPHEMERAL:
                del self._by_address[a]

    def resolve(self, batch: TransactionBatch) -> list[SignerIdentity]:
        """Return the ordered distinct signer list for ``batch``.

        The fee payer comes first, then declared signers in first-appearance order.
        Every signer an instruction requires must be declared by its InstructionSet,
        and nothing beyond the required set (plus the payer) may be declared.
        """
        ordered: dict[str, SignerIdentity] = {batch.payer.address: batch.payer}
        for s in batch.sets:
            if s.payer.address != batch.payer.address:
                raise ConfigurationError(f"{s.op_key}: fee payer differs from the batch payer")
            for identity in s.signers:
                ordered.setdefault(identity.address, identity)

        required: dict[str, None] = {batch.payer.address: None}
        for s in batch.sets:
            for ix in s.instructions:
                for address in ix.signer_addresses:
                    if address not in ordered:
                        raise MissingSignerError(
                            f"{s.op_key}: {ix.label or ix.program_id} needs signer {short(address)} "
                            "which its instruction set does not declare",
                            key=s.op_key,
                        )
                    required.setdefault(address, None)

        excess = [a for a in ordered if a not in required]
        if excess:
            raise ConfigurationError(
                f"Declared signers not required by any instruction: {', '.join(short(a) for a in excess)}"
            )
        return list(ordered.values())
