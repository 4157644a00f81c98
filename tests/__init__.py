"""
tests/
------
HealthDoc Builder — Test Package
--------------------------------
Contains the pytest suites for the document bundle builder.

Test Modules:
    - test_fhir_helpers.py: ids, date canonicalisation, timestamps, narratives
    - test_schemas.py: patient / practitioner / ABHA / form normalisation
    - test_config.py: environment-driven settings
    - test_providers.py: patient source chain and practitioner providers
    - test_attachments.py: base64 encoding, placeholder, read failures
    - test_fhir_mapper.py: individual FHIR record builders
    - test_bundle_assembler.py: entry order and reference integrity
    - test_document_builder.py: end-to-end builds and BuildSession
    - test_submission_client.py: gateway client
    - test_main.py: FastAPI endpoints

Project: HealthDoc Builder
"""
