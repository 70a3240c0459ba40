"""
SLA Module
==========

Bounded context for per-ticket SLA clocks.

Responsibilities:
- Derive first-response and resolution due dates from team/priority policy
- Count only working time when a policy is business-hours only
- Pause the resolution clock while a ticket waits on someone else
- Report at-risk and breached thresholds exactly once per clock
- Hot-reload the YAML policy file via watchdog
"""
