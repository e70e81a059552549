import doctest

import pytest

from irrmap import (ensemble, estimators, hierarchical, learners, observations, sampling,
                    scoring, utils)


@pytest.mark.parametrize('module', [utils, observations, learners, ensemble, scoring,
                                    hierarchical, estimators, sampling],
                         ids=lambda m: m.__name__)
def test_docstring_examples(module):
    result = doctest.testmod(module, optionflags=doctest.NORMALIZE_WHITESPACE)
    assert result.failed == 0
