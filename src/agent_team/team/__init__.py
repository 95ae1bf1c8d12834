"""Multi-worker team coordination over tmux panes and shared state files.

Workers and the leader share no memory. The leader writes task files and
inboxes under advisory file locks, then wakes workers with a short literal
keystroke trigger. Team phase is re-derived from task files on every poll, so
the leader can be restarted at any point without losing progress.
"""
