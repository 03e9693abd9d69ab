import unittest

from fakes import DIMS, FakeApiError, FakeEmbeddings

from manualqa.embeddings import EmbeddingClient
from manualqa.errors import EmbeddingError


def _client(embeddings, **kwargs) -> EmbeddingClient:
    kwargs.setdefault("retry_delay_s", 0.0)
    kwargs.setdefault("max_attempts", 3)
    return EmbeddingClient(embeddings, dimensions=DIMS, **kwargs)


class TestEmbeddingClient(unittest.TestCase):
    def test_one_vector_per_input_in_order(self):
        fake = FakeEmbeddings()
        vectors = _client(fake).embed(["alpha", "beta", "gamma"])
        self.assertEqual(len(vectors), 3)
        self.assertTrue(all(len(v) == DIMS for v in vectors))
        self.assertEqual(fake.calls, [["alpha", "beta", "gamma"]])

    def test_empty_batch_makes_no_call(self):
        fake = FakeEmbeddings()
        self.assertEqual(_client(fake).embed([]), [])
        self.assertEqual(fake.calls, [])

    def test_long_input_is_truncated(self):
        fake = FakeEmbeddings()
        _client(fake, max_input_chars=300).embed(["x" * 1000])
        self.assertEqual(len(fake.calls[0][0]), 300)

    def test_rate_limit_is_retried(self):
        fake = FakeEmbeddings(failures={1: FakeApiError(429, "slow down")})
        vectors = _client(fake).embed(["alpha"])
        self.assertEqual(len(vectors), 1)
        self.assertEqual(len(fake.calls), 2)

    def test_rate_limit_gives_up_after_max_attempts(self):
        fake = FakeEmbeddings(failures={n: FakeApiError(429) for n in range(1, 10)})
        with self.assertRaises(EmbeddingError) as ctx:
            _client(fake, max_attempts=3).embed(["alpha"])
        self.assertEqual(ctx.exception.status_code, 429)
        self.assertEqual(len(fake.calls), 3)

    def test_other_errors_are_not_retried(self):
        fake = FakeEmbeddings(failures={1: FakeApiError(500, "boom")})
        with self.assertRaises(EmbeddingError) as ctx:
            _client(fake).embed(["alpha"])
        self.assertEqual(ctx.exception.status_code, 500)
        self.assertFalse(ctx.exception.retryable)
        self.assertEqual(ctx.exception.body, {"error": "boom"})
        self.assertEqual(len(fake.calls), 1)

    def test_dimension_mismatch_is_an_error(self):
        fake = FakeEmbeddings(dims=DIMS + 1)
        with self.assertRaises(EmbeddingError):
            _client(fake).embed(["alpha"])

    def test_embed_query(self):
        self.assertEqual(len(_client(FakeEmbeddings()).embed_query("alpha")), DIMS)


if __name__ == "__main__":
    unittest.main()
