import pytest

import bulkmint.constants as C
from bulkmint.layouts import MasterEdition, TokenAccount
from bulkmint.orchestrator import Orchestrator
from bulkmint.planner import OperationPlanner
from bulkmint.programs import edition_address
from bulkmint.progress import ProgressLedger
from bulkmint.retry import FixedDelay, RetryController
from bulkmint.signers import SignerIdentity, SignerRegistry, SigningContext
from bulkmint.submission import SubmissionEngine

from fakes import FakeNetwork, address


class NoSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


@pytest.fixture
def network():
    return FakeNetwork()


@pytest.fixture
def operator():
    return SignerIdentity.generate(C.SignerRole.PAYER)


@pytest.fixture
def signing(operator):
    return SigningContext.single(operator)


@pytest.fixture
def registry(signing):
    return SignerRegistry(signing)


@pytest.fixture
def ledger_path(tmp_path):
    return tmp_path / "progress.db"


@pytest.fixture
def ledger(ledger_path):
    return ProgressLedger(ledger_path)


@pytest.fixture
def planner(network, signing, registry, ledger):
    return OperationPlanner(network, signing, registry, ledger)


@pytest.fixture
def sleep():
    return NoSleep()


@pytest.fixture
def forever(sleep):
    """Retry-forever controller that does not actually wait."""
    return RetryController(FixedDelay(1.0), sleep=sleep)


@pytest.fixture
def make_orchestrator(network, signing, registry):
    def _make(ledger, net=None):
        net = net or network
        planner = OperationPlanner(net, signing, registry, ledger)
        return Orchestrator(planner, SubmissionEngine(net, registry), ledger, registry)

    return _make


@pytest.fixture
def master_mint(network, signing):
    """A master edition with unlimited supply and a funded source holding account."""
    mint = address("master-mint")
    network.accounts[edition_address(mint)] = MasterEdition(supply=0, max_supply=None).encode()
    holding = address("source-holding")
    network.program_accounts[C.TOKEN_PROGRAM_ID].append(
        (holding, TokenAccount(mint=mint, owner=signing.account_authority.address, amount=1).encode())
    )
    return mint
