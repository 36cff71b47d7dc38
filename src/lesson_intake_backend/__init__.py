"""
Lesson Intake Backend - ingestion coordinator for uploaded lesson materials

This package accepts uploaded lesson files (images, PDFs, PPTX decks),
decides which extraction job each one needs and tracks those jobs as
durable records in a remote job store. It provides:

- File-type routing to extraction job kinds
- A strictly sequential upload scheduler
- A shared recognition engine with lazy creation and idle reclamation
- Job lifecycle management (pending -> processing -> complete/error, retry)

Key Components:
    - classifier: File-type routing and upload preflight
    - upload_queue: Sequential upload scheduler
    - worker_pool: Shared recognition engine pool
    - job_store: HTTP client for the durable job store
    - job_manager: Job state machine
    - extraction: OCR job execution
    - intake: End-to-end flow for one uploaded file
    - main: FastAPI application and HTTP endpoint definitions

Usage:
    Run the API server with:
        uvicorn lesson_intake_backend.main:app --reload --host 0.0.0.0 --port 8000
"""
