from .evm_rpc_client import EvmRpcClient

__all__ = ["EvmRpcClient"]
