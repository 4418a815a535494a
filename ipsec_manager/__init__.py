"""
IPsec Policy Manager

Central policy distribution for IPsec tunnels:
- control_plane: policy store and policy-source API
- agent: per-node reconciliation daemon
- policy: policy schema and engine
- ipsec: tunnel model, lifecycle and backends
"""

__version__ = "0.1.0"
