"""Hook-side commands: talk to a running host or fall back to a headless one."""
