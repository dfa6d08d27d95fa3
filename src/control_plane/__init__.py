"""Voice agent control plane: partners, workspaces, agents, billing and campaigns."""

__version__ = "0.1.0"
