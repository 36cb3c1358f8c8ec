"""
Resume Pipeline Backend - two-phase resume parse/optimize service

An uploaded resume PDF goes through two phases, each a fan-out of one
text-generation call per resume section ("chunk"):

- Parse: extract the text and structure it faithfully (the original)
- Generate: rewrite it following the user's instruction (the final), with an
  ATS keyword score against an optional job description

The HTTP API only stores the upload, creates the job and enqueues it. Any
number of stateless worker processes consume the queue and coordinate through
leased job records in the database.

Key Components:
    - main: FastAPI application (upload, status polling, results, PDF rendering)
    - worker: worker process entrypoint
    - dispatcher: bounded-concurrency queue consumer
    - job_store: job state machine and leases
    - phases: Parse and Generate executors
    - chunks: chunk fan-out/fan-in over the provider
    - provider / key_manager: retrying provider client with key rotation
    - render_pool: bounded HTML -> PDF rendering
    - configuration: OmegaConf config loading

Usage:
    Run the API server with:
        uvicorn resume_pipeline_backend.main:app --host 0.0.0.0 --port 8000

    Run a worker with:
        resume-pipeline-worker
"""
