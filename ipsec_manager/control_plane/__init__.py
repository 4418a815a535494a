"""
IPsec control plane: policy storage and the HTTP API agents poll
"""
