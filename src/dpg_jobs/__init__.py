"""
DPG Jobs - master file sequence and archive service

This package provides a FastAPI-based job service for a library
digitization workflow. It keeps three things consistent for every unit of
scanned page images:

- The ordered ``<unit>_<page>.tif`` master file sequence and its records
- The canonical bytes in the archive tree, verified by checksum
- Clone lineage between units, and IIIF publication of originals

Key Components:
    - main: FastAPI application and HTTP endpoint definitions
    - job_manager: Background job lifecycle, event log and per-unit locks
    - mutations: Add, insert, replace, delete, clone and deaccession
    - sequence: Pure page number arithmetic and rename planning
    - archive: Archive tree and working directory adapter
    - lineage: Original/clone classification
    - iiif: JPEG 2000 conversion and S3 publication
    - techmetadata: Image tech metadata extraction
    - database: sqlite record store
    - configuration: Config loading and merging logic

Usage:
    Run the API server with:
        uvicorn dpg_jobs.main:app --host 0.0.0.0 --port 8080
"""
