"""Enforcement store backends."""

from ..models import Mode
from .base import EnforcementStore
from .bpf import BpfMapStore
from .nftables import NftablesStore

__all__ = ["EnforcementStore", "BpfMapStore", "NftablesStore", "build_store"]


def build_store(config, **kwargs) -> EnforcementStore:
    """Instantiate the backend selected by a ``Config``; not yet opened.

    A dry-run config yields a read-only store. ``kwargs`` go to the store
    constructor (``run``, ``timeout``).
    """
    kwargs.setdefault("read_only", config.dry_run)
    if config.backend == "bpf":
        return BpfMapStore(map_path=config.bpf_map_path, xdp_object=config.xdp_object,
                           interface=config.interface, **kwargs)
    return NftablesStore(table=config.nft_table, layout=config.layout,
                         default_drop=config.mode is Mode.ALLOW, **kwargs)
