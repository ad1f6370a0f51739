"""Allow running with python -m bmn_resolver."""

from bmn_resolver.main import main

main()
