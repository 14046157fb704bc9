from dataclasses import dataclass

from pgbridge.sql import CommandType

from libb import ConfigOptions, scriptname

__all__ = ['DatabaseOptions']

REQUIRED_OPTIONS = ('hostname', 'username', 'database', 'port')


@dataclass
class DatabaseOptions(ConfigOptions):
    """Options

    supported driver names: `postgresql`

    Command interpretation:
    - command_type: `text` (default), `stored_procedure` or `table_direct`

    Connection pooling options:
    - use_pool: Whether to use connection pooling (default: False)
    - pool_max_connections: Maximum connections in pool (default: 5)
    - pool_max_idle_time: Maximum seconds a connection can be idle (default: 300)
    - pool_wait_timeout: Maximum seconds to wait for a connection (default: 30)
    """
    drivername: str = 'postgresql'
    hostname: str = None
    username: str = None
    password: str = None
    database: str = None
    port: int = 0
    timeout: int = 0
    appname: str = None
    command_type: CommandType | str = CommandType.TEXT
    # Connection pooling parameters
    use_pool: bool = False
    pool_max_connections: int = 5
    pool_max_idle_time: int = 300
    pool_wait_timeout: int = 30

    def __post_init__(self):
        if self.drivername != 'postgresql':
            raise ValueError(f'drivername must be postgresql, got {self.drivername!r}')
        missing = [name for name in REQUIRED_OPTIONS if not getattr(self, name)]
        if missing:
            raise ValueError(f'Missing required options: {missing}')
        self.appname = self.appname or scriptname() or 'python_console'
        self.command_type = CommandType.parse(self.command_type)
