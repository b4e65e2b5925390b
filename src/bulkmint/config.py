import os
import tomllib
from pathlib import Path

pkg_root = Path(__file__).parent
config_file = pkg_root / "config.toml"


def load_config(path: str | Path | None = None) -> dict:
    """Read the packaged config.toml (or ``path``) and apply environment overrides."""
    conf = tomllib.loads(Path(path or config_file).read_text())
    rpc = conf.setdefault("rpc", {})
    rpc["url"] = os.getenv("RPC_URL", rpc.get("url", "https://api.devnet.solana.com"))
    ledger = conf.setdefault("ledger", {})
    ledger["path"] = os.getenv("BULKMINT_LEDGER", ledger.get("path", "bulkmint_progress.db"))
    conf.setdefault("batch", {})
    conf.setdefault("retry", {})
    conf.setdefault("programs", {})
    return conf


cfg = load_config()
