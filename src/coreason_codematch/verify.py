# Copyright (c) 2025 CoReason, Inc.
#
# This software is proprietary and dual-licensed.
# Licensed under the Prosperity Public License 3.0 (the "License").
# A copy of the license is available at https://prosperitylicense.com/versions/3.0.0
# For details, see the LICENSE file.
# Commercial use beyond a 30-day trial requires a separate license.
#
# Source Code: https://github.com/CoReason-AI/coreason_codematch

from typing import List, Optional

import numpy as np
from loguru import logger

from coreason_codematch.interfaces import CorpusStore
from coreason_codematch.schemas import CodeEntry, EmbeddingCheck, JobFilter, VerificationReport


def check_embedding(entry: CodeEntry, expected_dimension: int) -> EmbeddingCheck:
    """
    Checks one stored vector: expected dimension, only finite values, and a
    non-zero L2 magnitude.
    """
    vector = np.asarray(entry.embedding or [], dtype=np.float64)
    finite = bool(np.all(np.isfinite(vector)))
    magnitude = float(np.linalg.norm(vector)) if finite else float("nan")
    dimension = int(vector.shape[0])
    ok = dimension == expected_dimension and finite and magnitude > 0.0
    return EmbeddingCheck(
        code_value=entry.code_value,
        display_name=entry.display_name,
        embedding_model=entry.embedding_model,
        dimension=dimension,
        magnitude=magnitude,
        finite=finite,
        ok=ok,
        sample_values=[float(v) for v in vector[:5]],
    )


def verify_embeddings(
    store: CorpusStore,
    expected_dimension: int,
    filters: Optional[JobFilter] = None,
    sample_size: int = 5,
) -> VerificationReport:
    """
    Samples embedded rows in key order and reports per-row quality checks.
    """
    report = VerificationReport(expected_dimension=expected_dimension)
    sample: List[CodeEntry] = store.sample_embedded(filters or JobFilter(), sample_size)
    if not sample:
        logger.warning("No embedded rows found to verify")
        return report

    for entry in sample:
        check = check_embedding(entry, expected_dimension)
        report.checks.append(check)
        report.checked += 1
        if check.ok:
            report.passed += 1
            logger.info(f"{entry.code_value}: dim={check.dimension} magnitude={check.magnitude:.4f} ok")
        else:
            report.failed += 1
            logger.error(
                f"{entry.code_value}: dim={check.dimension} (expected {expected_dimension}) "
                f"magnitude={check.magnitude:.4f} finite={check.finite}"
            )

    logger.info(f"Verification complete: {report.passed}/{report.checked} embeddings passed")
    return report
