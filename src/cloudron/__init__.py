"""
Cloudron - command-line client for Cloudron boxes.

Installs, updates, backs up, restores and inspects applications on a
Cloudron through its REST API, and runs commands inside app containers.
"""

__version__ = "1.0.0"
__author__ = "Cloudron Team"
__email__ = "support@cloudron.io"
__description__ = "Command-line client for installing and managing Cloudron apps"
