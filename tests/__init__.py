"""
EditShield Test Suite

Tests for all EditShield modules including:
- Pattern classification and input validation
- Rate limiting, threat ledger and risk scoring
- CSP policy engine, header guard and violation pipeline
- Resilience primitives and the security manager facade
- FastAPI integration

Author: jetgause
Created: 2025-12-14
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
test_dir = Path(__file__).parent
project_root = test_dir.parent
sys.path.insert(0, str(project_root))

__version__ = "1.0.0"
__all__ = []
