import logging
from collections.abc import Iterable

import bulkmint.constants as C
from bulkmint.errors import ChunkCeilingError
from bulkmint.models import InstructionSet, TransactionBatch
from bulkmint.wire import MAX_ACCOUNT_KEYS, account_count, transaction_size

log = logging.getLogger("bulkmint.chunker")


class Chunker:
    """Greedy packing of InstructionSets into TransactionBatches.

    A set is never split. A new batch starts when the next set would push the
    current one past ``max_instructions`` or ``max_bytes``, or when the set reads an
    address that an earlier set in the current batch creates.
    """

    def __init__(self, max_instructions: int = C.MAX_INSTRUCTIONS, max_bytes: int = C.MAX_TRANSACTION_BYTES) -> None:
        if max_instructions < 1:
            raise ChunkCeilingError(f"max_instructions must be positive, got {max_instructions}")
        self.max_instructions = max_instructions
        self.max_bytes = max_bytes

    def _fits(self, payer: str, sets: list[InstructionSet]) -> bool:
        n = sum(len(s) for s in sets)
        if n > self.max_instructions:
            return False
        instructions = [ix for s in sets for ix in s.instructions]
        if account_count(payer, instructions) > MAX_ACCOUNT_KEYS:
            return False
        return transaction_size(payer, instructions) <= self.max_bytes

    def chunk(self, sets: Iterable[InstructionSet]) -> list[TransactionBatch]:
        batches: list[TransactionBatch] = []
        current: list[InstructionSet] = []
        created: set[str] = set()

        def flush():
            nonlocal current, created
            if current:
                batches.append(TransactionBatch(sets=current, payer=current[0].payer))
            current, created = [], set()

        for s in sets:
            if not self._fits(s.payer.address, [s]):
                raise ChunkCeilingError(
                    f"{s.op_key}: {len(s)} instructions cannot fit in one transaction "
                    f"(ceiling {self.max_instructions} instructions / {self.max_bytes} bytes)",
                    key=s.op_key,
                )
            if current and (
                s.payer.address != current[0].payer.address
                or s.reads_committed & created
                or not self._fits(s.payer.address, [*current, s])
            ):
                flush()
            current.append(s)
            created |= s.creates
        flush()

        log.debug("Packed %d instruction sets into %d batches", sum(len(b.sets) for b in batches), len(batches))
        return batches
