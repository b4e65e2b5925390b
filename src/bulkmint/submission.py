import logging
from collections.abc import Awaitable, Callable

import bulkmint.constants as C
from bulkmint.errors import SubmissionRejected, SubmissionTimedOut
from bulkmint.models import SignedBatch, SubmissionOutcome, TransactionBatch
from bulkmint.network import Network
from bulkmint.signers import SignerRegistry
from bulkmint.wire import build_message, sign_message

log = logging.getLogger("bulkmint.submission")

CONFIRMED_STATUSES = {"confirmed", "finalized"}


class SubmissionEngine:
    """Drives one batch through Built -> Signed -> Submitted -> {Confirmed | Rejected | TimedOut}.

    Each attempt binds a freshly fetched checkpoint. Before re-submitting in
    confirmed mode the signatures of earlier attempts are looked up, and the batch
    counts as Confirmed if any of them already landed.
    """

    def __init__(self, network: Network, registry: SignerRegistry) -> None:
        self.network = network
        self.registry = registry

    async def sign(self, batch: TransactionBatch) -> SignedBatch:
        checkpoint = await self.network.fetch_checkpoint_token()
        signers = self.registry.resolve(batch)
        message = build_message(batch.payer.address, batch.instructions, checkpoint.token)
        tx = sign_message(message, signers)
        wire = bytes(tx)
        signature = str(tx.signatures[0])

        batch.checkpoint = checkpoint
        batch.signers = signers
        batch.attempts += 1
        batch.signatures.append(signature)
        batch.state = C.BatchState.SIGNED
        log.debug("Signed %s with %s as %s", batch, ", ".join(str(s) for s in signers), signature)
        return SignedBatch(wire=wire, signature=signature, checkpoint=checkpoint)

    async def landed(self, signature: str) -> bool:
        return await self.network.fetch_signature_status(signature) in CONFIRMED_STATUSES

    async def already_confirmed(self, batch: TransactionBatch) -> str | None:
        for signature in batch.signatures:
            if await self.landed(signature):
                return signature
        return None

    def _outputs(self, batch: TransactionBatch) -> dict:
        outputs: dict = {}
        for s in batch.sets:
            outputs.update(s.outputs)
        return outputs

    async def submit(
        self,
        batch: TransactionBatch,
        mode: C.SubmitMode,
        *,
        before_send: Callable[[SignedBatch], Awaitable[None]] | None = None,
    ) -> SubmissionOutcome:
        """Submit ``batch``; raises SubmissionRejected or SubmissionTimedOut on failure.

        ``before_send`` runs once the attempt is signed and before it reaches the
        network, so its signature can be journalled ahead of any confirmation.
        """
        if mode is C.SubmitMode.CONFIRMED and batch.signatures:
            signature = await self.already_confirmed(batch)
            if signature is not None:
                log.info("Earlier attempt %s already confirmed, not re-submitting", signature)
                batch.state = C.BatchState.CONFIRMED
                return SubmissionOutcome(
                    state=C.BatchState.CONFIRMED,
                    signature=signature,
                    outputs=self._outputs(batch),
                    checkpoint=batch.checkpoint,
                )

        signed = await self.sign(batch)
        if before_send is not None:
            await before_send(signed)
        batch.state = C.BatchState.SUBMITTED
        try:
            if mode is C.SubmitMode.CONFIRMED:
                outcome = await self.network.submit_and_confirm(signed)
            else:
                outcome = await self.network.submit_only(signed)
        except SubmissionRejected:
            batch.state = C.BatchState.REJECTED
            raise

        batch.state = outcome.state
        if outcome.state is C.BatchState.TIMED_OUT:
            raise SubmissionTimedOut(f"{signed.signature} not confirmed before height {signed.checkpoint.last_valid_height}")
        outcome.outputs = self._outputs(batch)
        outcome.checkpoint = signed.checkpoint
        log.debug("%s -> %s", batch, outcome.signature)
        return outcome
