"""Feature modules: permissions, audit, conflicts and transfer."""
