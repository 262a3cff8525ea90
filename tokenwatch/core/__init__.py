from .supervisor import PipelineSupervisor

__all__ = ['PipelineSupervisor']
