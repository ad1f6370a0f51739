"""bmn-resolver - off-chain coordination core for Bridge-Me-Not atomic swaps."""

__version__ = "0.1.0"
