"""
TunnelGuard Bundle Module

Single-file client profiles for issued peers.
"""

from .assembler import BundleWriter, PeerBundle, assemble, extract_bundle_blocks

__all__ = ["BundleWriter", "PeerBundle", "assemble", "extract_bundle_blocks"]
