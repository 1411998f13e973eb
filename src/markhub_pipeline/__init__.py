"""
Пакет markhub_pipeline
Асинхронный конвейер AI-классификации закладок MarkHub.
"""

__version__ = "0.1.0"
