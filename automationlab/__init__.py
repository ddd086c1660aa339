"""
automationlab - AWS lab provisioning with resumable, lockable state.

Creates a security group, SSH key pair, EC2 instance and S3 bucket per
workspace, records each in a JSON state document, and destroys them in
reverse dependency order.
"""

__version__ = "0.1.0"

__all__ = ["AutomationLabConfig", "load_config", "get_automationlab_home"]

from .config import AutomationLabConfig, load_config, get_automationlab_home
