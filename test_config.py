import os
import unittest
from unittest.mock import patch

from tokenwatch.config import Config, PipelineConfig
from tokenwatch.config.config import _env_addresses, _env_bool
from tokenwatch.errors import ConfigurationError


class TestConfig(unittest.TestCase):
    def test_factory_addresses_are_normalised(self):
        with patch.dict(os.environ, {'TOKEN_FACTORY_ADDRESSES': ' 0xABC , ,0xdef,0xAbC '}):
            self.assertEqual(_env_addresses('TOKEN_FACTORY_ADDRESSES'), frozenset({'0xabc', '0xdef'}))
        with patch.dict(os.environ, {}, clear=True):
            self.assertEqual(_env_addresses('TOKEN_FACTORY_ADDRESSES'), frozenset())

    def test_env_bool(self):
        with patch.dict(os.environ, {'PRICE_FALLBACK_ENABLED': 'false'}):
            self.assertFalse(_env_bool('PRICE_FALLBACK_ENABLED', True))
        with patch.dict(os.environ, {'PRICE_FALLBACK_ENABLED': 'Yes'}):
            self.assertTrue(_env_bool('PRICE_FALLBACK_ENABLED', False))
        with patch.dict(os.environ, {'PRICE_FALLBACK_ENABLED': ''}):
            self.assertTrue(_env_bool('PRICE_FALLBACK_ENABLED', True))

    def test_defaults(self):
        cfg = PipelineConfig()
        self.assertEqual(cfg.chain, 'avalanche')
        self.assertEqual(cfg.price_batch_size, 5)
        self.assertEqual(cfg.price_batch_delay_seconds, 1.0)
        self.assertEqual(cfg.price_update_interval_seconds, 120.0)
        self.assertEqual(cfg.sweep_interval_seconds, 30.0)
        self.assertEqual(cfg.sweep_max_blocks, 10)
        self.assertEqual(cfg.min_valid_market_cap, 1000.0)
        self.assertEqual(cfg.initial_price_delay_seconds, 5.0)

    def test_pipeline_config_reads_class_settings(self):
        with patch.object(Config, 'PRICE_BATCH_SIZE', 3), patch.object(Config, 'TOKEN_STORE', 'memory'):
            cfg = Config.pipeline_config()
        self.assertEqual(cfg.price_batch_size, 3)
        self.assertEqual(cfg.token_store, 'memory')

    def test_validate_accepts_memory_store(self):
        self.assertTrue(Config.validate(PipelineConfig(token_store='memory')))

    def test_validate_lists_every_problem(self):
        cfg = PipelineConfig(rpc_url='', price_batch_size=0, token_store='sqlite')
        with self.assertRaises(ConfigurationError) as ctx:
            Config.validate(cfg)
        message = str(ctx.exception)
        self.assertIn('EVM_RPC_URL', message)
        self.assertIn('PRICE_BATCH_SIZE', message)
        self.assertIn('TOKEN_STORE', message)

    def test_validate_postgres_settings(self):
        with patch.object(Config, 'POSTGRES_CONNECTION_STRING', None), patch.object(Config, 'POSTGRES_HOST', ''):
            with self.assertRaises(ConfigurationError) as ctx:
                Config.validate(PipelineConfig(token_store='postgres'))
        self.assertIn('POSTGRES_HOST', str(ctx.exception))

        with patch.object(Config, 'POSTGRES_CONNECTION_STRING', 'postgresql://u:p@db/tokens'), \
                patch.object(Config, 'POSTGRES_HOST', ''):
            self.assertTrue(Config.validate(PipelineConfig(token_store='postgres')))


if __name__ == '__main__':
    unittest.main()
