"""
ingestion/rpc package

Provider failover and contract reads for the sync layer.
"""
from .client import ChainReader, web3_client_factory
from .errors import RateLimited, RpcError, RpcExhausted, RpcTimeout
from .failover import EndpointConfig, FallbackRouter
from .monitor import HealthMonitor, HealthScore

__all__ = [
    'ChainReader',
    'web3_client_factory',
    'RateLimited',
    'RpcError',
    'RpcExhausted',
    'RpcTimeout',
    'EndpointConfig',
    'FallbackRouter',
    'HealthMonitor',
    'HealthScore',
]
