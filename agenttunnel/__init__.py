"""
Agenttunnel - expose a locally running AI agent through a public tunnel and keep
its plugin registration in sync with the project while you develop.

Built with Python, FastAPI, httpx and WebSockets.
"""

__version__ = "1.0.0"
__description__ = "Expose a local AI agent through a public tunnel and keep its plugin registration in sync"
