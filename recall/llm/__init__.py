"""
Generation clients, prompts and hypothetical document generation.
"""

from .client import IGenerationClient, OpenAICompatibleClient, OllamaClient, create_generation_client
from .hyde import HydeGenerator

__all__ = [
    'IGenerationClient',
    'OpenAICompatibleClient',
    'OllamaClient',
    'create_generation_client',
    'HydeGenerator'
]
