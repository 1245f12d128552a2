"""Report job orchestration: stage graph, queue, scheduler and bug reporting."""
