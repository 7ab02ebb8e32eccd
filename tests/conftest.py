"""
Shared fixtures for the stepflow test suite.
"""

import pytest

from stepflow.engine.executor_interface import StepContext
from stepflow.engine.run_log import StepLogContext
from stepflow.engine.template import TemplateRenderer
from stepflow.engine.variables import VariableStore
from stepflow.models.flow import Step
from stepflow.utils.fixtures import FixtureGenerator


@pytest.fixture
def renderer():
    return TemplateRenderer(FixtureGenerator(seed=7))


@pytest.fixture
def make_context(renderer):
    """Build a StepContext from a raw step mapping and optional variables."""

    def factory(step_data, variables=None):
        step = Step.model_validate(step_data)
        return StepContext(
            step=step,
            variables=VariableStore(variables),
            renderer=renderer,
            log=StepLogContext(),
        )

    return factory
