"""
Backup run components: archive creation, storage backends, retention,
notifications and the script tying them together.
"""

from .script import Script, HookLevel, run_script
from .proxy import run_proxy

__all__ = ['Script', 'HookLevel', 'run_script', 'run_proxy']
