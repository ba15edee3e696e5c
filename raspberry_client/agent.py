#!/usr/bin/env python3
"""
ScreenHub Device Agent
Runs on the screen's player: sends heartbeats, polls the command queue,
executes commands and acknowledges them, and keeps settings in sync
"""

import os
import sys
import json
import time
import logging

import requests

# Configuration - Auto-detect installation directory
INSTALL_DIR = os.path.dirname(os.path.abspath(__file__))
CONFIG_FILE = os.path.join(INSTALL_DIR, 'config.json')
LOG_FILE = os.path.join(INSTALL_DIR, 'logs', 'agent.log')
POLL_INTERVAL = 10  # seconds
HEARTBEAT_INTERVAL = 60  # seconds
SETTINGS_CHECK_INTERVAL = 300  # 5 minutes
REQUEST_TIMEOUT = 5  # seconds, every round trip is bounded

logger = logging.getLogger(__name__)


class ScreenAgent:
    """Control loop for one device"""

    def __init__(self, config, timeout=REQUEST_TIMEOUT):
        self.server_url = config['server_url'].rstrip('/')
        self.device_id = config['device_id']
        self.provisioning_token = config['provisioning_token']
        self.screen_id = config.get('screen_id')
        self.timeout = timeout

        self.status = 'idle'
        self.current_content = None
        self.settings = {}

        self.handlers = {
            'set_content': self.handle_set_content,
            'stop_content': self.handle_stop_content,
            'reload': self.handle_reload,
            'update_settings': self.handle_update_settings,
        }

        logger.info(f'ScreenHub agent initialized for device {self.device_id}')

    def _post(self, path, payload):
        """POST a JSON body and return the decoded response, or None on any failure"""
        try:
            response = requests.post(
                f'{self.server_url}{path}',
                json=payload,
                headers={'Content-Type': 'application/json'},
                timeout=self.timeout
            )
            response.raise_for_status()
            return response.json()
        except Exception as e:
            logger.warning(f'Request to {path} failed: {e}')
            return None

    # ------------------------------------------------------------------
    # Round trips
    # ------------------------------------------------------------------

    def send_heartbeat(self):
        """Send heartbeat; learns the bound screen from the response"""
        data = self._post('/device-heartbeat', {
            'device_id': self.device_id,
            'provisioning_token': self.provisioning_token,
            'status': self.status,
            'current_content': self.current_content,
        })
        if data is None:
            return False

        screen_id = data.get('screen_id')
        if screen_id and screen_id != self.screen_id:
            logger.info(f'Device bound to screen {screen_id}')
            self.screen_id = screen_id
        logger.debug('Heartbeat sent successfully')
        return True

    def poll_commands(self):
        """Fetch pending commands; an unbound device has nothing to poll"""
        if not self.screen_id:
            return []
        data = self._post('/device-commands', {
            'action': 'poll',
            'device_id': self.device_id,
            'screen_id': self.screen_id,
        })
        if data is None:
            return []
        return data.get('commands') or []

    def ack_commands(self, ids):
        if not ids:
            return True
        data = self._post('/device-commands', {
            'action': 'ack',
            'device_id': self.device_id,
            'ack_ids': ids,
        })
        return data is not None

    def fetch_settings(self):
        data = self._post('/device-settings', {
            'mode': 'get',
            'device_id': self.device_id,
            'screen_id': self.screen_id,
        })
        if data is None:
            return False
        settings = data.get('settings') or {}
        if settings != self.settings:
            logger.info('Settings changed, applying')
            self.settings = settings
        return True

    # ------------------------------------------------------------------
    # Command execution
    # ------------------------------------------------------------------

    def process_commands(self):
        """
        Execute one page of commands and ack those that ran

        A command whose handler fails is left unacknowledged so it is
        delivered again on the next poll.
        """
        executed = []
        for command in self.poll_commands():
            name = command.get('command')
            handler = self.handlers.get(name)
            if handler is None:
                logger.warning(f'Unknown command {name} (id={command.get("id")}), acknowledging')
                executed.append(command['id'])
                continue
            try:
                handler(command.get('payload') or {})
                executed.append(command['id'])
            except Exception as e:
                logger.error(f'Command {name} (id={command.get("id")}) failed: {e}')

        if executed:
            self.ack_commands(executed)
        return executed

    def handle_set_content(self, payload):
        content_url = payload['content_url']
        logger.info(f'Switching content to {content_url}')
        self.current_content = content_url
        self.status = 'playing'

    def handle_stop_content(self, payload):
        logger.info('Stopping content')
        self.current_content = None
        self.status = 'idle'

    def handle_reload(self, payload):
        logger.info('Reload requested')
        self.fetch_settings()

    def handle_update_settings(self, payload):
        self.fetch_settings()

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run_once(self, now, schedule):
        """One loop iteration; ``schedule`` tracks when each task last ran"""
        if now - schedule.get('heartbeat', 0) >= HEARTBEAT_INTERVAL:
            self.send_heartbeat()
            schedule['heartbeat'] = now

        if now - schedule.get('settings', 0) >= SETTINGS_CHECK_INTERVAL:
            if self.screen_id and self.fetch_settings():
                schedule['settings'] = now

        if now - schedule.get('poll', 0) >= POLL_INTERVAL:
            self.process_commands()
            schedule['poll'] = now

    def run(self):
        """Main run loop"""
        logger.info('Starting ScreenHub agent...')
        schedule = {}

        while True:
            try:
                self.run_once(time.time(), schedule)
                time.sleep(1)
            except KeyboardInterrupt:
                logger.info('Received shutdown signal')
                break
            except Exception as e:
                logger.error(f'Error in main loop: {e}')
                time.sleep(POLL_INTERVAL)

        logger.info('ScreenHub agent stopped')


def load_config(config_file=CONFIG_FILE):
    """Load configuration from JSON file"""
    with open(config_file, 'r') as f:
        config = json.load(f)
    for key in ('server_url', 'device_id', 'provisioning_token'):
        if not config.get(key):
            raise ValueError(f'Missing {key} in {config_file}')
    return config


def main():
    """Main entry point"""
    os.makedirs(os.path.dirname(LOG_FILE), exist_ok=True)
    logging.basicConfig(
        level=logging.INFO,
        format='%(asctime)s - %(levelname)s - %(message)s',
        handlers=[
            logging.FileHandler(LOG_FILE),
            logging.StreamHandler(sys.stdout)
        ]
    )

    try:
        config = load_config()
    except (OSError, ValueError) as e:
        logger.error(f'Cannot start agent: {e}')
        sys.exit(1)

    ScreenAgent(config).run()


if __name__ == '__main__':
    main()
