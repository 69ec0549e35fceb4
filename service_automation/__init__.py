"""
Automation Service for the CRM platform.

Runs trigger -> condition -> action workflows against CRM records and
drains the scheduled job queue on each cron tick.
"""
