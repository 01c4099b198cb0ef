"""
Writer — serialize the pipeline receipt to JSON.

Filesystem layout per target:
    <artifacts>/<target_triple>/pipeline_receipt.json
"""
import json
from pathlib import Path
from typing import Optional

from oxker_pipeline.io.schema import PipelineReceipt

RECEIPT_FILE = "pipeline_receipt.json"


def write_receipt(receipt: PipelineReceipt, output_dir: Path) -> Path:
    """
    Write pipeline_receipt.json into *output_dir*.

    Creates *output_dir* if it does not exist.
    Returns the receipt path.
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    receipt_path = output_dir / RECEIPT_FILE
    receipt_path.write_text(
        json.dumps(
            receipt.model_dump(mode="json"),
            indent=2,
            sort_keys=True,
        )
        + "\n"
    )
    return receipt_path


def read_receipt(path: Path) -> Optional[PipelineReceipt]:
    """Load a receipt written by write_receipt, or None if absent."""
    if not path.is_file():
        return None
    return PipelineReceipt.model_validate_json(path.read_text())
