"""GDPR data-subject-rights services: intake, verification, workflow, fulfilment, lifecycle, deletion and audit."""
