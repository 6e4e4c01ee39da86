import json
import os
import tempfile
import shutil

from miniscope import constants
from miniscope.simple_config import SimpleConfig, ConfigVar, read_user_config

from . import MiniscopeTestCase


class Test_SimpleConfig(MiniscopeTestCase):

    def setUp(self):
        super(Test_SimpleConfig, self).setUp()
        # make sure "read_user_config" and "user_dir" return a temporary directory.
        self.user_dir = tempfile.mkdtemp()
        self.options = {"miniscope_path": self.miniscope_path}

    def tearDown(self):
        super(Test_SimpleConfig, self).tearDown()
        shutil.rmtree(self.user_dir)

    def test_simple_config_command_line_overrides_everything(self):
        """Options passed by command line override all other configuration
        sources"""
        fake_read_user = lambda _: {"network": "regtest"}
        read_user_dir = lambda: self.user_dir
        config = SimpleConfig(options={"network": "testnet", **self.options},
                              read_user_config_function=fake_read_user,
                              read_user_dir_function=read_user_dir)
        self.assertEqual("testnet", config.NETWORK)
        self.assertIs(constants.BitcoinTestnet, config.get_selected_chain())

    def test_simple_config_user_config_is_used_if_others_arent_specified(self):
        fake_read_user = lambda _: {"network": "regtest"}
        config = SimpleConfig(options={"network": None, **self.options},
                              read_user_config_function=fake_read_user)
        self.assertEqual("regtest", config.NETWORK)

    def test_path_defaults_to_user_dir(self):
        config = SimpleConfig(read_user_dir_function=lambda: self.user_dir)
        self.assertEqual(self.user_dir, config.path)
        config = SimpleConfig(self.options)
        self.assertEqual(self.miniscope_path, config.path)

    def test_cannot_set_options_passed_by_command_line(self):
        fake_read_user = lambda _: {"nums_key": "ab" * 32}
        config = SimpleConfig(options={"nums_key": "cd" * 32, **self.options},
                              read_user_config_function=fake_read_user)
        self.assertFalse(config.is_modifiable(SimpleConfig.NUMS_KEY))
        config.NUMS_KEY = "ef" * 32
        self.assertEqual("cd" * 32, config.NUMS_KEY)

    def test_set_key_saves_user_config(self):
        config = SimpleConfig(self.options)
        config.GROUP_DISPLAY_LIMIT = 25
        with open(os.path.join(self.miniscope_path, "config"), "r", encoding="utf-8") as f:
            self.assertEqual({"group_display_limit": 25}, json.loads(f.read()))
        config2 = SimpleConfig(self.options)
        self.assertEqual(25, config2.GROUP_DISPLAY_LIMIT)
        config2.GROUP_DISPLAY_LIMIT = None
        self.assertEqual(10, SimpleConfig(self.options).GROUP_DISPLAY_LIMIT)

    def test_set_key_without_save(self):
        config = SimpleConfig(self.options)
        config.set_key("descriptor_child_index", 4, save=False)
        self.assertEqual(4, config.DESCRIPTOR_CHILD_INDEX)
        self.assertFalse(os.path.exists(os.path.join(self.miniscope_path, "config")))

    def test_configvars_defaults(self):
        config = SimpleConfig(self.options)
        self.assertEqual("bitcoin", config.NETWORK)
        self.assertIs(constants.BitcoinMainnet, config.get_selected_chain())
        self.assertEqual(constants.NUMS_POINT, config.NUMS_KEY)
        self.assertEqual(3, config.GROUP_PREVIEW_COUNT)
        self.assertEqual(128, config.MAX_RECURSION_DEPTH)
        self.assertEqual(10, SimpleConfig.GROUP_DISPLAY_LIMIT.get_default_value())
        self.assertIn("network", config.list_config_vars())

    def test_configvars_setter_type_check(self):
        config = SimpleConfig(self.options)
        with self.assertRaises(ValueError):
            config.GROUP_DISPLAY_LIMIT = "many"

    def test_configvars_getter_conversion(self):
        config = SimpleConfig(self.options)
        config.set_key("group_preview_count", "5")
        self.assertEqual(5, config.GROUP_PREVIEW_COUNT)
        config.set_key("network", "litecoin")
        with self.assertRaises(ValueError):
            config.NETWORK

    def test_configvars_setter_catches_typo(self):
        config = SimpleConfig(self.options)
        assert not hasattr(config, "NETORK")
        with self.assertRaises(AttributeError):
            config.NETORK = "testnet"

    def test_configvar_repr(self):
        self.assertEqual("<ConfigVar key='network'>", repr(SimpleConfig.NETWORK))
        self.assertIsInstance(SimpleConfig.NETWORK, ConfigVar)


class TestUserConfig(MiniscopeTestCase):

    def test_no_path_means_no_result(self):
        self.assertEqual({}, read_user_config(None))

    def test_path_without_config_file(self):
        self.assertEqual({}, read_user_config(self.miniscope_path))

    def test_path_with_invalid_config(self):
        with open(os.path.join(self.miniscope_path, "config"), "w", encoding="utf-8") as f:
            f.write("[1, 2]")
        with self.assertRaises(ValueError):
            read_user_config(self.miniscope_path)
