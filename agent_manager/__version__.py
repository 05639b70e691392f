__version__ = "0.4.0"
__repository__ = "https://github.com/agent-manager-x/agent-manager-x"
