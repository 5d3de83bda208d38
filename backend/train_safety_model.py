"""SafePath Backend — Offline Safety Model Training

Trains the XGBoost safety regressor from a JSON-lines export of safety
reports (one SafetyReport per line) and writes it, with metadata.json, to the
model directory the API server loads at startup.

Run from project root:
    python backend/train_safety_model.py reports.jsonl [--model-dir DIR]
"""

import argparse
import logging
import sys
import time
from pathlib import Path

from config import MODEL_DIR, TRAINING_EPOCHS
from report_store import InMemoryReportStore
from safety_service import SafetyModelService

logging.basicConfig(level=logging.INFO, format="%(asctime)s  %(message)s")
logger = logging.getLogger("train")


def main(argv=None) -> int:
    parser = argparse.ArgumentParser(description=__doc__.splitlines()[0])
    parser.add_argument("reports", type=Path, help="JSON-lines file of safety reports")
    parser.add_argument("--model-dir", type=Path, default=MODEL_DIR)
    parser.add_argument("--epochs", type=int, default=TRAINING_EPOCHS)
    parser.add_argument("--seed", type=int, default=42)
    args = parser.parse_args(argv)

    if not args.reports.exists():
        logger.error(f"Reports file not found: {args.reports}")
        return 1

    t0 = time.time()
    store = InMemoryReportStore(path=args.reports)
    service = SafetyModelService(
        store,
        model_dir=args.model_dir,
        training_epochs=args.epochs,
        training_seed=args.seed,
    )
    try:
        if not service.train_model():
            logger.error("Not enough reports to train; nothing saved.")
            return 1
        service.save_model()

        hotspots = service.identify_hotspots()
        logger.info(f"{'='*50}")
        logger.info(f"Samples:   {service.last_sample_size}")
        logger.info(f"Loss:      {service.model_loss:.4f}")
        logger.info(f"Hotspots:  {len(hotspots)}")
        for h in hotspots[:10]:
            logger.info(f"  ({h.location.lat:.4f}, {h.location.lng:.4f})  "
                        f"{h.category:9s} score={h.safetyScore:.2f}  reports={h.reportCount}")
        logger.info(f"{'='*50}")
    finally:
        service.close()

    logger.info(f"Total training time: {time.time() - t0:.1f}s")
    return 0


if __name__ == "__main__":
    sys.exit(main())
