from .signer import LocalSigner

__all__ = ["LocalSigner"]
