from .service import RetrievalService

__all__ = ['RetrievalService']
