"""
Scheduled export pipeline.

Modules:
    base: Collaborator contracts (source client, format converter, destination client)
    stages: extract, validate, transform, format, upload
    clients: Shopify source client, CSV/JSON/XML converters, cloud drive clients
    runner: Job execution engine (one JobExecution per run)
    next_run: Next-due computation for DAILY/WEEKLY/MONTHLY schedules
    scheduler: APScheduler-backed trigger registry

Flow:
    JobScheduler → JobRunner → Extract → Validate → Transform → Format → Upload
"""
