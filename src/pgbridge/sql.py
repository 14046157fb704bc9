"""
SQL text helpers for the executor.

- `quote_identifier()` - Quote table/column/channel names
- `make_placeholders()` - Positional placeholder list
- `CommandType` and `build_command()` - How the executor interprets the text
  it is given (plain SQL, stored procedure name, table name)
"""
from enum import Enum

__all__ = [
    'CommandType',
    'build_command',
    'make_placeholders',
    'quote_identifier',
]


class CommandType(Enum):
    """Interpretation of the command text passed to the executor.
    """
    TEXT = 'text'
    STORED_PROCEDURE = 'stored_procedure'
    TABLE_DIRECT = 'table_direct'

    @classmethod
    def parse(cls, value: 'CommandType | str | None') -> 'CommandType':
        """Accept an enum member, its value or its name (case-insensitive).
        """
        if value is None:
            return cls.TEXT
        if isinstance(value, cls):
            return value
        text = str(value).strip().lower()
        for member in cls:
            if text in {member.value, member.name.lower()}:
                return member
        raise ValueError(f'Unknown command type: {value!r}')


def quote_identifier(identifier: str) -> str:
    """Safely quote a PostgreSQL identifier.

    Dotted names are quoted part by part so that `schema.table` keeps its
    meaning.

    >>> quote_identifier('users')
    '"users"'
    >>> quote_identifier('public.users')
    '"public"."users"'
    >>> quote_identifier('we"ird')
    '"we""ird"'
    """
    if not identifier:
        raise ValueError('Identifier must not be empty')
    return '.'.join('"' + part.replace('"', '""') + '"' for part in identifier.split('.'))


def make_placeholders(count: int) -> str:
    """Return a comma separated list of positional placeholders.

    >>> make_placeholders(3)
    '%s, %s, %s'
    >>> make_placeholders(0)
    ''
    """
    return ', '.join(['%s'] * count)


def _flatten_args(args: tuple) -> tuple:
    """Allow both f(a, b) and f([a, b]) call styles."""
    if len(args) == 1 and isinstance(args[0], (list, tuple)):
        return tuple(args[0])
    return args


def build_command(text: str, args: tuple, command_type: CommandType) -> tuple[str, tuple]:
    """Turn command text into executable SQL according to the command type.

    >>> build_command('select 1', (), CommandType.TEXT)
    ('select 1', ())
    >>> build_command('refresh_totals', (1, 'x'), CommandType.STORED_PROCEDURE)
    ('CALL "refresh_totals"(%s, %s)', (1, 'x'))
    >>> build_command('accounts', (), CommandType.TABLE_DIRECT)
    ('select * from "accounts"', ())
    """
    if command_type is CommandType.TEXT:
        return text, args

    if command_type is CommandType.STORED_PROCEDURE:
        params = _flatten_args(args)
        return f'CALL {quote_identifier(text)}({make_placeholders(len(params))})', params

    if command_type is CommandType.TABLE_DIRECT:
        if args:
            raise ValueError('TABLE_DIRECT commands take no parameters')
        return f'select * from {quote_identifier(text)}', ()

    raise ValueError(f'Unsupported command type: {command_type}')
