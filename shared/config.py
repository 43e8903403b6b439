import configparser
import os
from pathlib import Path

from shared.constants import COMM_PORT, DEFAULT_HOST, DEFAULT_SERVER_HOST

CONFIG_FILE = Path(__file__).parent.parent / 'config.ini'


def load_config(component='all', config_file=None):
    """
    Load configuration from config.ini and environment variables.

    Args:
        component (str): Which component's config to load ('server', 'client' or 'all')
        config_file (Path): Alternative ini file, mostly useful for tests

    Returns:
        dict: Configuration dictionary
    """
    # Default values
    config = {
        'server': {
            'host': DEFAULT_SERVER_HOST,
            'port': COMM_PORT
        },
        'client': {
            'host': DEFAULT_HOST,
            'port': COMM_PORT
        }
    }

    # Try to load from config.ini
    config_file = Path(config_file) if config_file else CONFIG_FILE
    if config_file.exists():
        parser = configparser.ConfigParser()
        parser.read(config_file)

        for section in ('server', 'client'):
            if section in parser:
                config[section]['host'] = parser[section].get('host', config[section]['host'])
                config[section]['port'] = parser[section].getint('port', config[section]['port'])

    # Environment variables override config file
    if component in ['server', 'all']:
        config['server']['host'] = os.environ.get('CHAT_SERVER_HOST', config['server']['host'])
        config['server']['port'] = int(os.environ.get('CHAT_SERVER_PORT', config['server']['port']))

    if component in ['client', 'all']:
        config['client']['host'] = os.environ.get('CHAT_CLIENT_HOST', config['client']['host'])
        config['client']['port'] = int(os.environ.get('CHAT_CLIENT_PORT', config['client']['port']))

    if component == 'all':
        return config
    return config[component]
