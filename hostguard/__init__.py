"""hostguard: interactive hardening tools for fail2ban, sshd and the hostname."""

__version__ = "2.3.0"
