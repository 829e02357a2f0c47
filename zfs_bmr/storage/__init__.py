"""Storage-side building blocks: mounts, snapshots, pipelines, provisioning."""
