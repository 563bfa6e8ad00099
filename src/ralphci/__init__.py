"""ralphci: autonomous iteration-control harness for coding agents."""

__version__ = "0.3.1"
