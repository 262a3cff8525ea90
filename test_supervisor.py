import signal
import unittest
from unittest.mock import MagicMock, patch

from tokenwatch.config import Config, PipelineConfig
from tokenwatch.core.main import main
from tokenwatch.core.supervisor import PipelineSupervisor
from tokenwatch.database.redis_client import RedisConnectionError
from tokenwatch.database.token_store import InMemoryTokenStore
from tokenwatch.errors import ConfigurationError
from tokenwatch.evm.core.block_watcher import BlockWatcher
from tokenwatch.pricing.scheduler import BatchScheduler, PassReport

FOO = '0x' + 'f00' * 13 + 'f'
CREATOR = '0x' + 'c0' * 20


def _rpc():
    rpc = MagicMock()
    rpc.chain = 'avalanche'
    rpc.block_number.return_value = 100
    rpc.get_block.return_value = {
        'timestamp': hex(1700000000),
        'transactions': [{'hash': '0xaa', 'from': CREATOR, 'to': None}],
    }
    rpc.get_transaction_receipt.return_value = {'status': '0x1', 'contractAddress': FOO, 'logs': []}
    rpc.get_token_metadata.return_value = {'name': 'Foo', 'symbol': 'FOO', 'decimals': 18, 'total_supply': 1}
    return rpc


class TestPipelineSupervisor(unittest.TestCase):
    def setUp(self):
        patcher = patch.object(Config, 'REDIS_HOST', None)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.config = PipelineConfig(token_store='memory', initial_price_delay_seconds=3600)
        self.store = InMemoryTokenStore()
        self.rpc = _rpc()
        self.supervisor = PipelineSupervisor(self.config, store=self.store, rpc=self.rpc, sources=[])
        self.addCleanup(self.supervisor.shutdown, timeout=5)

    @patch('tokenwatch.core.supervisor.signal.signal')
    @patch.object(BatchScheduler, 'start')
    @patch.object(BlockWatcher, 'start')
    def test_initialize_is_idempotent(self, watcher_start, scheduler_start, signal_signal):
        self.supervisor.initialize()
        self.supervisor.initialize()

        watcher_start.assert_called_once()
        scheduler_start.assert_called_once()
        registered = {c[0][0] for c in signal_signal.call_args_list}
        self.assertIn(signal.SIGINT, registered)
        self.assertIn(signal.SIGTERM, registered)
        self.assertEqual(len(signal_signal.call_args_list), len(registered))

    def test_invalid_configuration_is_fatal(self):
        supervisor = PipelineSupervisor(PipelineConfig(rpc_url='', token_store='memory'), store=self.store,
                                        rpc=self.rpc, sources=[])
        with self.assertRaises(ConfigurationError):
            supervisor.initialize()

    def test_failed_build_closes_what_was_opened(self):
        store = MagicMock()
        supervisor = PipelineSupervisor(self.config, rpc=self.rpc, sources=[])
        with patch.object(PipelineSupervisor, '_build_store', return_value=store), \
                patch.object(PipelineSupervisor, '_build_checkpoint',
                             side_effect=RedisConnectionError('Connection refused')):
            with self.assertRaises(RedisConnectionError):
                supervisor.sync_from_source(100, 100)

        store.close.assert_called_once()
        self.assertIsNone(supervisor.store)
        # Injected collaborators stay open and attached
        self.rpc.close.assert_not_called()
        self.assertIs(supervisor.rpc, self.rpc)

    def test_health_check_does_no_network_io(self):
        health = self.supervisor.health_check()
        self.assertEqual(health['status'], 'stopped')
        self.assertEqual(health['services'], {'block_watcher': 'stopped', 'price_scheduler': 'stopped'})
        self.assertIn('timestamp', health)
        self.assertIsNone(health['last_checked_block'])
        self.assertIsNone(health['last_price_pass'])
        self.assertEqual(self.rpc.method_calls, [])

    @patch('tokenwatch.core.supervisor.signal.signal')
    @patch.object(BatchScheduler, 'is_running', return_value=True)
    @patch.object(BlockWatcher, 'is_running', return_value=True)
    @patch.object(BatchScheduler, 'start')
    @patch.object(BlockWatcher, 'start')
    def test_health_check_when_running(self, *mocks):
        self.supervisor.initialize()
        health = self.supervisor.health_check()
        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['services'], {'block_watcher': 'running', 'price_scheduler': 'running'})

    def test_sync_creates_token_and_schedules_initial_price(self):
        created = self.supervisor.sync_from_source(100, 100)

        self.assertEqual([m.contract_address for m in created], [FOO])
        self.assertEqual(len(self.store), 1)
        self.assertEqual(self.supervisor.pending_initial_prices(), [FOO])
        self.assertEqual(self.supervisor.health_check()['last_checked_block'], 100)

        self.supervisor.shutdown(timeout=5)
        self.assertEqual(self.supervisor.pending_initial_prices(), [])
        self.rpc.close.assert_called_once()

    def test_initial_price_uses_force_update(self):
        self.supervisor.sync_from_source(100, 100)
        self.supervisor._timers[FOO].cancel()
        with patch.object(BatchScheduler, 'force_update_token') as force_update:
            self.supervisor._run_initial_price(FOO)
        force_update.assert_called_once_with(FOO)
        self.assertEqual(self.supervisor.pending_initial_prices(), [])

    def test_force_update_token(self):
        self.supervisor.sync_from_source(100, 100)
        # No price source configured, so the fallback estimate is stored
        self.assertIs(self.supervisor.force_update_token(FOO), True)
        self.assertEqual(self.store.get(FOO)['price_source'], 'fallback')
        self.assertIs(self.supervisor.force_update_token('0x' + '11' * 20), False)

    def test_update_all_prices(self):
        self.supervisor.sync_from_source(100, 100)
        report = self.supervisor.update_all_prices()
        self.assertIsInstance(report, PassReport)
        self.assertEqual(report.updated, 1)
        self.assertEqual(self.supervisor.health_check()['last_price_pass']['updated'], 1)

    def test_signal_triggers_shutdown(self):
        self.supervisor.sync_from_source(100, 100)
        self.supervisor._handle_signal(signal.SIGTERM, None)
        # Returns immediately once shutdown has run
        self.supervisor.wait()
        self.rpc.close.assert_called_once()


class TestMain(unittest.TestCase):
    def test_configuration_error_exits_with_1(self):
        with patch('tokenwatch.core.main.PipelineSupervisor') as supervisor_cls:
            supervisor_cls.return_value.update_all_prices.side_effect = ConfigurationError('EVM_RPC_URL')
            self.assertEqual(main(['--once', '--dry-run']), 1)
            supervisor_cls.return_value.shutdown.assert_called_once()
            config = supervisor_cls.call_args[0][0]
            self.assertEqual(config.token_store, 'memory')

    def test_block_range_requires_sync(self):
        with patch('tokenwatch.core.main.PipelineSupervisor') as supervisor_cls:
            self.assertEqual(main(['--from-block', '10']), 2)
            supervisor_cls.assert_not_called()

    def test_force_update_without_quote_fails(self):
        with patch('tokenwatch.core.main.PipelineSupervisor') as supervisor_cls:
            supervisor_cls.return_value.force_update_token.return_value = False
            self.assertEqual(main(['--force-update', FOO]), 1)


if __name__ == '__main__':
    unittest.main()
