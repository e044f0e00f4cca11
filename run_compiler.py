"""
Main Execution Script for the FSH export engine.
Loads the base definitions and the project, runs one compilation pass,
writes one JSON file per exported resource and prints the diagnostic report.
"""

import os
import sys
import json
import logging
from pathlib import Path

from exporter.engine import FshCompiler
from loaders.definitions import load_definitions_dir
from loaders.project import ProjectError, load_project_file

# --- CONFIGURATION ---
PROJECT_FILE = os.environ.get("FSH_PROJECT", "project.json")
DEFINITIONS_DIR = os.environ.get("FSH_DEFINITIONS", "definitions")
OUTPUT_DIR = os.environ.get("FSH_OUTPUT", "fsh-generated")
LOG_LEVEL = os.environ.get("FSH_LOG_LEVEL", "INFO")
# ---------------------

logging.basicConfig(
    level=getattr(logging, LOG_LEVEL.upper(), logging.INFO),
    format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
    handlers=[logging.StreamHandler()]
)
logger = logging.getLogger("Main")


def write_package(package, output_dir: str) -> int:
    """Writes ``{resourceType}-{id}.json`` per resource. Returns the file count."""
    target = Path(output_dir)
    target.mkdir(parents=True, exist_ok=True)

    written = 0
    for resource in package.to_json():
        filename = target / f"{resource['resourceType']}-{resource['id']}.json"
        with open(filename, 'w', encoding='utf-8') as f:
            json.dump(resource, f, indent=2)
        written += 1
    logger.info(f"Wrote {written} resources to {target}")
    return written


def main() -> int:
    logger.info("Starting FSH export...")

    # --- PHASE 1: INPUTS ---
    try:
        library = load_definitions_dir(DEFINITIONS_DIR)
        config, tank, problems = load_project_file(PROJECT_FILE)
    except (ProjectError, FileNotFoundError) as e:
        logger.error(str(e))
        return 2

    # --- PHASE 2: EXPORT ---
    compiler = FshCompiler(tank, library, config)
    package = compiler.run()

    # --- PHASE 3: OUTPUT ---
    write_package(package, OUTPUT_DIR)

    # --- PHASE 4: REPORTING ---
    stats = compiler.state.get_statistics()

    print("\n" + "=" * 50)
    print("FINAL EXPORT REPORT")
    print("=" * 50)
    print(f"Profiles:            {len(package.profiles)}")
    print(f"Extensions:          {len(package.extensions)}")
    print(f"Value sets:          {len(package.value_sets)}")
    print(f"Code systems:        {len(package.code_systems)}")
    print(f"Instances:           {len(package.instances)}")
    print(f"Failed entities:     {stats['failed']}")
    print(f"Exported w/ errors:  {stats['exported_with_errors']}")
    print(f"Errors / warnings:   {stats['errors']} / {stats['warnings']}")

    for message in problems:
        print(f"[rejected] {message}")

    if stats['errors'] or stats['warnings']:
        print("\nDIAGNOSTICS")
        for entry in compiler.state.get_failure_report():
            marker = "FAILED" if entry['failed'] else entry['status'] or "-"
            print(f"[{marker}] {entry['entity']} ({entry['diagnostic_count']})")
            for message in entry['messages']:
                print(f"   {message}")

    return 1 if stats['errors'] or problems else 0


if __name__ == "__main__":
    sys.exit(main())
