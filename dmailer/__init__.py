"""A small mail transport agent with a spool queue, local mbox and SMTP delivery."""

__version__ = "0.1.0"
__all__ = ["__version__"]