"""
Scheduler package.

- queue: Enqueue, cancel and inspect scheduler jobs.
- processor: The cron tick; scheduled workflow discovery and job draining.
- cadence: Enrollment lifecycle and due step processing.
"""
