"""Pier: a local service mesh for development.

Shared infrastructure containers, per-project domains behind one reverse
proxy, and a control-plane API reporting what is routed where.
"""

__version__ = "0.2.0"
