import json
import logging

from dotenv import load_dotenv

from config import PipelineConfig
from pipeline import PipelineOrchestrator

# Load Env
load_dotenv()

SAMPLE_LEASE = """SOLAR LAND LEASE AGREEMENT

This Lease Agreement is made between the parties below.

Lessor: John and Mary Smith, 1200 Ranch Road, Austin, TX 78701
Lessee: Sunfield Solar Development LLC

The Premises consist of approximately 500 acres in County: Travis.
Parcel No. 0123-4567-89

The initial term of this Lease shall be 25 years from the Effective Date.
Base rent shall be $500 per acre per year, subject to 2% annual escalation.
Lessee shall pay Lessor a signing bonus: $15,000 upon execution.
"""


if __name__ == "__main__":
    config = PipelineConfig.from_env(load_dotenv_file=False)
    logging.basicConfig(
        level=getattr(logging, config.log_level.upper(), logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    orchestrator = PipelineOrchestrator(config)
    tenant_id = "demo-tenant"

    # Simulate an upload
    print("Starting Land Document Pipeline...")
    document = orchestrator.create_document(tenant_id, "sample_lease.txt", text=SAMPLE_LEASE, project_id="demo-project")
    status = orchestrator.get_workflow_status(document["workflow_id"], tenant_id)

    print(f"\nDocument {document['id']}: {document['status']}")
    print(f"Category: {document['category']} ({document['classification_confidence']:.0%})")
    print(f"Extraction confidence: {document['confidence']:.0%}")
    print(json.dumps(document["extracted_data"], indent=2))
    print(f"\nWorkflow {status['workflowId']}: {status['status']} at {status['currentNode']}")

    # Simulate the reviewer approving it
    for request in orchestrator.get_review_queue(tenant_id):
        print(f"\nReview requested ({request['urgency']}): {request['description']}")
        orchestrator.resolve_review(request["id"], True, notes="Terms verified", resolved_by="demo-reviewer", tenant_id=tenant_id)

    status = orchestrator.get_workflow_status(document["workflow_id"], tenant_id)
    document = orchestrator.store.get_document(document["id"], tenant_id)
    print(f"\nAfter review -> workflow: {status['status']}, document: {document['status']}")
