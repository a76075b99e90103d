from .base import AdapterBase, AdapterResult
from .generic import GenericAdapter
from .smtp import SMTPAdapter

__all__ = ['AdapterBase', 'AdapterResult', 'GenericAdapter', 'SMTPAdapter']
