"""Behavioural-state HMMs for frigatebird GPS and altitude tracks."""

__version__ = "0.1.0"
