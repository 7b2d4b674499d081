"""
Chat Session Constants
======================

Shared constants for expansion chat sessions: fixed user-facing notices and
the default system prompt.
"""

import sys
from pathlib import Path

# -------------------------------------------------------------------
# Root directory of the Forge project (repository root).
# Used throughout the server package whenever the repo root is needed.
# -------------------------------------------------------------------
ROOT_DIR = Path(__file__).parent.parent.parent

# Ensure the project root is on sys.path so root-level modules
# (security, activity_parser, registry, ...) import without installation.
_root_str = str(ROOT_DIR)
if _root_str not in sys.path:
    sys.path.insert(0, _root_str)

INITIAL_MESSAGE = "Begin the project expansion process."
ANALYZING_MESSAGE = "Analyzing your project for expansion..."
RESUME_MESSAGE = "Resuming existing expansion session. What would you like to add?"
STOPPED_MESSAGE = "Stopped."

# Placeholder in the system prompt replaced with the absolute project path
PROJECT_PATH_PLACEHOLDER = "$ARGUMENTS"

DEFAULT_FEATURE_CATEGORY = "functional"

DEFAULT_EXPAND_PROMPT = """\
# GOAL

Help the user add new features to an existing project.

# YOUR ROLE

You are the Project Expansion Assistant - an expert at understanding existing
projects and adding new capabilities.

# STEPS

1. Read the existing project in $ARGUMENTS (start with prompts/app_spec.txt or
   the README if there is no spec)
2. Summarize what exists for the user
3. Ask what NEW features they want to add
4. Create features in this JSON format wrapped in <features_to_create> tags:

<features_to_create>
[
  {
    "category": "functional",
    "name": "Feature name",
    "description": "What this feature does",
    "steps": ["Step 1", "Step 2", "Step 3"]
  }
]
</features_to_create>

# BEGIN

Start by reading the project and greeting the user.
"""
