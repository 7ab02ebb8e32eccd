"""
Fixture Generator - Pseudo-random test data for flow templates.

Backs the random* template functions (randomEmail, randomName, randString, ...)
with Faker. Every generator draws from one explicitly owned random source, so a
seeded FixtureGenerator produces the same sequence of values on every run.

Libraries:
- Faker: https://github.com/joke2k/faker - Fake data generation
"""

import logging
import random
import string
import uuid
from typing import List, Optional

from faker import Faker

logger = logging.getLogger(__name__)

ALPHANUMERIC = string.ascii_letters + string.digits

PHONE_TEMPLATE = "+############"

INDUSTRIES: List[str] = [
    "Technology",
    "Finance",
    "Healthcare",
    "Retail",
    "Manufacturing",
    "Education",
    "Transportation",
    "Energy",
]


class FixtureError(ValueError):
    """Raised when a fixture generator is called with invalid arguments."""
    pass


class FixtureGenerator:
    """
    Random fixture data source used by the template renderer.

    Holds its own Faker instance and random.Random so that seeding one
    generator never affects another (or the process-wide random module).

    Usage:
        fixtures = FixtureGenerator(seed=42)
        fixtures.email()        # deterministic for seed 42
        fixtures.rand_string(8)
    """

    def __init__(self, seed: Optional[int] = None, locale: Optional[str] = None):
        """
        Initialize the generator.

        Args:
            seed: Optional seed for deterministic output
            locale: Optional Faker locale (default: Faker's en_US)
        """
        self._faker = Faker(locale) if locale else Faker()
        self._random = random.Random()
        if seed is not None:
            self.seed(seed)

    def seed(self, seed: int) -> None:
        """Re-seed both the Faker instance and the random source."""
        self._faker.seed_instance(seed)
        self._random.seed(seed)

    def uuid(self) -> str:
        return str(uuid.UUID(int=self._random.getrandbits(128), version=4))

    def email(self) -> str:
        return self._faker.email()

    def phone(self) -> str:
        return self._faker.numerify(PHONE_TEMPLATE)

    def name(self) -> str:
        return self._faker.name()

    def address(self) -> str:
        """Full street address on a single line."""
        return ", ".join(line.strip() for line in self._faker.address().splitlines() if line.strip())

    def company(self) -> str:
        return self._faker.company()

    def job_title(self) -> str:
        return self._faker.job()

    def sentence(self, word_count: int) -> str:
        """
        Generate a sentence with exactly word_count words.

        Returns an empty string for non-positive counts.
        """
        word_count = int(word_count)
        if word_count <= 0:
            return ""
        return self._faker.sentence(nb_words=word_count, variable_nb_words=False)

    def paragraph(self, sentence_count: int, words_per_sentence: int) -> str:
        """
        Generate a paragraph of sentence_count sentences.

        Returns an empty string when either count is non-positive.
        """
        sentence_count = int(sentence_count)
        words_per_sentence = int(words_per_sentence)
        if sentence_count <= 0 or words_per_sentence <= 0:
            return ""
        return " ".join(self.sentence(words_per_sentence) for _ in range(sentence_count))

    def country(self) -> str:
        return self._faker.country()

    def city(self) -> str:
        return self._faker.city()

    def zip_code(self) -> str:
        return self._faker.postcode()

    def website(self) -> str:
        return self._faker.url()

    def color(self) -> str:
        return self._faker.color_name()

    def company_industry(self) -> str:
        return self._random.choice(INDUSTRIES)

    def rand_int(self, min_value: int, max_value: int) -> int:
        """
        Random integer in [min_value, max_value].

        When min_value >= max_value, min_value is returned unchanged.
        """
        min_value = int(min_value)
        max_value = int(max_value)
        if min_value >= max_value:
            return min_value
        return self._random.randint(min_value, max_value)

    def rand_string(self, length: int) -> str:
        """
        Alphanumeric string of the given length.

        Raises:
            FixtureError: If length is not positive
        """
        length = int(length)
        if length <= 0:
            raise FixtureError("randString: length must be positive")
        return "".join(self._random.choice(ALPHANUMERIC) for _ in range(length))
