"""Want tracking, peer selection and broadcast scheduling for block-exchange sessions."""

__version__ = "0.1.0"