"""Atoll static site generator.

Atoll turns a tree of Markdown documents and Jinja page templates into a
deployable static site, and serves the same pipeline in development with
live reload. Interactive React components ("islands") are bundled with
esbuild and hydrated independently on otherwise static pages.

The main entry point is the CLI module, which provides commands for
scaffolding new projects, building sites, and running the development
server under a file-watching supervisor.
"""

__all__ = ["__version__"]
__version__ = "0.1.0"
