"""SaveDotFiles: dotfiles archiving, git retention rotation and weekly scheduling."""

__version__ = "1.0.0"
