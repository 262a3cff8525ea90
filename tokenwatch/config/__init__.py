from .config import Config, PipelineConfig, setup_logging

__all__ = ['Config', 'PipelineConfig', 'setup_logging']
