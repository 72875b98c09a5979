"""Task Escrow Service - task lifecycle and escrow settlement for the gig marketplace."""

__version__ = "0.1.0"
