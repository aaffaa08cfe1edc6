"""Services facade for the onboarding pipeline.

Public API boundary for the CLI and any request/response front end.
"""

from onboardlib.services.onboarding import OnboardingService

__all__ = ["OnboardingService"]
