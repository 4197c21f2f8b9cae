"""
Rule Condition Expressions
Parses alert rule conditions into a small tagged AST and evaluates them
against a read-only context. Nothing outside the context and the
whitelisted functions is reachable from an expression.

Grammar (lowest to highest precedence)::

    expr       := or_expr
    or_expr    := and_expr (('or' | '||') and_expr)*
    and_expr   := not_expr (('and' | '&&') not_expr)*
    not_expr   := ('not' | '!') not_expr | comparison
    comparison := additive [('==' | '!=' | '<' | '<=' | '>' | '>=' | 'in' | 'not in') additive]
    additive   := term (('+' | '-') term)*
    term       := unary (('*' | '/' | '%') unary)*
    unary      := '-' unary | postfix
    postfix    := primary ('.' NAME)*
    primary    := NUMBER | STRING | 'true' | 'false' | 'null'
                | NAME | NAME '(' [expr (',' expr)*] ')'
                | '(' expr ')' | '[' [expr (',' expr)*] ']'

Null handling: arithmetic with null yields null, ordering comparisons
involving null are false, and a field lookup on null yields null.
Division by zero yields null.
"""

import re
from functools import lru_cache
from typing import Any, Callable, Dict, List, Mapping, Tuple

from kaos_sync.exceptions import ExpressionError

# ========================================
# Tokenizer
# ========================================

TOKEN_RE = re.compile(r"""
    (?P<ws>\s+)
  | (?P<number>\d+\.\d*|\.\d+|\d+)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<name>[A-Za-z_][A-Za-z0-9_]*)
  | (?P<op>==|!=|<=|>=|&&|\|\||[<>+\-*/%!().,\[\]])
""", re.VERBOSE)

KEYWORDS = {'and', 'or', 'not', 'in', 'true', 'false', 'null'}

Token = Tuple[str, Any, int]


def tokenize(source: str) -> List[Token]:
    """Split an expression into (kind, value, position) tokens."""
    tokens = []
    pos = 0
    while pos < len(source):
        match = TOKEN_RE.match(source, pos)
        if match is None:
            raise ExpressionError(f"Unexpected character {source[pos]!r} at position {pos}")

        kind = match.lastgroup
        text = match.group(kind)
        if kind == 'number':
            tokens.append(('number', float(text) if '.' in text else int(text), pos))
        elif kind == 'string':
            tokens.append(('string', _unescape(text[1:-1]), pos))
        elif kind == 'name':
            tokens.append(('keyword' if text in KEYWORDS else 'name', text, pos))
        elif kind == 'op':
            tokens.append(('op', text, pos))
        pos = match.end()

    tokens.append(('end', None, pos))
    return tokens


def _unescape(text: str) -> str:
    return re.sub(r'\\(.)', lambda m: {'n': '\n', 't': '\t'}.get(m.group(1), m.group(1)), text)


# ========================================
# Parser
# ========================================

COMPARISON_OPS = {'==', '!=', '<', '<=', '>', '>='}


class _Parser:
    """Recursive-descent parser producing tagged tuples."""

    def __init__(self, source: str):
        self.source = source
        self.tokens = tokenize(source)
        self.index = 0

    def peek(self) -> Token:
        return self.tokens[self.index]

    def advance(self) -> Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def at(self, kind: str, *values) -> bool:
        token_kind, value, _ = self.peek()
        return token_kind == kind and (not values or value in values)

    def expect(self, kind: str, value=None) -> Token:
        token = self.peek()
        if token[0] != kind or (value is not None and token[1] != value):
            expected = value or kind
            raise ExpressionError(f"Expected {expected!r} at position {token[2]} in {self.source!r}")
        return self.advance()

    def parse(self) -> tuple:
        if self.at('end'):
            raise ExpressionError("Empty expression")
        node = self.or_expr()
        if not self.at('end'):
            _, value, pos = self.peek()
            raise ExpressionError(f"Unexpected {value!r} at position {pos} in {self.source!r}")
        return node

    def or_expr(self) -> tuple:
        node = self.and_expr()
        while self.at('keyword', 'or') or self.at('op', '||'):
            self.advance()
            node = ('or', node, self.and_expr())
        return node

    def and_expr(self) -> tuple:
        node = self.not_expr()
        while self.at('keyword', 'and') or self.at('op', '&&'):
            self.advance()
            node = ('and', node, self.not_expr())
        return node

    def not_expr(self) -> tuple:
        if self.at('keyword', 'not') or self.at('op', '!'):
            self.advance()
            return ('not', self.not_expr())
        return self.comparison()

    def comparison(self) -> tuple:
        left = self.additive()
        if self.at('op', *COMPARISON_OPS):
            op = self.advance()[1]
            return ('cmp', op, left, self.additive())
        if self.at('keyword', 'in'):
            self.advance()
            return ('in', left, self.additive(), False)
        if self.at('keyword', 'not') and self.tokens[self.index + 1][:2] == ('keyword', 'in'):
            self.advance()
            self.advance()
            return ('in', left, self.additive(), True)
        return left

    def additive(self) -> tuple:
        node = self.term()
        while self.at('op', '+', '-'):
            op = self.advance()[1]
            node = ('arith', op, node, self.term())
        return node

    def term(self) -> tuple:
        node = self.unary()
        while self.at('op', '*', '/', '%'):
            op = self.advance()[1]
            node = ('arith', op, node, self.unary())
        return node

    def unary(self) -> tuple:
        if self.at('op', '-'):
            self.advance()
            return ('neg', self.unary())
        return self.postfix()

    def postfix(self) -> tuple:
        node = self.primary()
        while self.at('op', '.'):
            self.advance()
            name = self.expect('name')[1]
            node = ('field', node, name)
        return node

    def primary(self) -> tuple:
        kind, value, pos = self.peek()

        if kind in ('number', 'string'):
            self.advance()
            return ('lit', value)

        if kind == 'keyword' and value in ('true', 'false', 'null'):
            self.advance()
            return ('lit', {'true': True, 'false': False, 'null': None}[value])

        if kind == 'name':
            self.advance()
            if self.at('op', '('):
                self.advance()
                args = self.items(')')
                if value not in FUNCTIONS:
                    raise ExpressionError(f"Unknown function '{value}'")
                return ('call', value, args)
            return ('var', value)

        if self.at('op', '('):
            self.advance()
            node = self.or_expr()
            self.expect('op', ')')
            return node

        if self.at('op', '['):
            self.advance()
            return ('list', self.items(']'))

        if kind == 'end':
            raise ExpressionError(f"Unexpected end of expression in {self.source!r}")
        raise ExpressionError(f"Unexpected {value!r} at position {pos} in {self.source!r}")

    def items(self, closer: str) -> tuple:
        items = []
        if not self.at('op', closer):
            items.append(self.or_expr())
            while self.at('op', ','):
                self.advance()
                items.append(self.or_expr())
        self.expect('op', closer)
        return tuple(items)


# ========================================
# Evaluator
# ========================================

def _is_number(value) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _fn_round(value, digits=0):
    if value is None:
        return None
    return round(value, int(digits))


def _fn_len(value):
    if value is None:
        return 0
    return len(value)


def _non_null(args):
    return [a for a in args if a is not None]


FUNCTIONS: Dict[str, Callable] = {
    'lower': lambda s: s.lower() if s is not None else None,
    'upper': lambda s: s.upper() if s is not None else None,
    'len': _fn_len,
    'abs': lambda x: abs(x) if x is not None else None,
    'min': lambda *args: min(_non_null(args)) if _non_null(args) else None,
    'max': lambda *args: max(_non_null(args)) if _non_null(args) else None,
    'round': _fn_round,
    'coalesce': lambda *args: next((a for a in args if a is not None), None),
}


def _arith(op: str, left, right):
    if left is None or right is None:
        return None

    if op == '+' and isinstance(left, str) and isinstance(right, str):
        return left + right
    if not (_is_number(left) and _is_number(right)):
        raise ExpressionError(f"Cannot apply '{op}' to {type(left).__name__} and {type(right).__name__}")

    if op == '+':
        return left + right
    if op == '-':
        return left - right
    if op == '*':
        return left * right
    if right == 0:
        return None
    if op == '/':
        return left / right
    return left % right


def _compare(op: str, left, right) -> bool:
    if op == '==':
        return left == right
    if op == '!=':
        return left != right

    if left is None or right is None:
        return False
    comparable = (_is_number(left) and _is_number(right)) or (isinstance(left, str) and isinstance(right, str))
    if not comparable:
        raise ExpressionError(f"Cannot compare {type(left).__name__} and {type(right).__name__} with '{op}'")

    if op == '<':
        return left < right
    if op == '<=':
        return left <= right
    if op == '>':
        return left > right
    return left >= right


def _evaluate(node: tuple, context: Mapping[str, Any]) -> Any:
    tag = node[0]

    if tag == 'lit':
        return node[1]

    if tag == 'var':
        name = node[1]
        if name not in context:
            raise ExpressionError(f"Unknown variable '{name}'")
        return context[name]

    if tag == 'field':
        target = _evaluate(node[1], context)
        if target is None:
            return None
        if not isinstance(target, Mapping):
            raise ExpressionError(f"Cannot read field '{node[2]}' of {type(target).__name__}")
        if node[2] not in target:
            raise ExpressionError(f"Unknown field '{node[2]}'")
        return target[node[2]]

    if tag == 'list':
        return [_evaluate(item, context) for item in node[1]]

    if tag == 'neg':
        value = _evaluate(node[1], context)
        if value is None:
            return None
        if not _is_number(value):
            raise ExpressionError(f"Cannot negate {type(value).__name__}")
        return -value

    if tag == 'arith':
        return _arith(node[1], _evaluate(node[2], context), _evaluate(node[3], context))

    if tag == 'cmp':
        return _compare(node[1], _evaluate(node[2], context), _evaluate(node[3], context))

    if tag == 'in':
        item = _evaluate(node[1], context)
        container = _evaluate(node[2], context)
        if container is None:
            return False
        if isinstance(container, str):
            if not isinstance(item, str):
                return False
        elif not isinstance(container, (list, tuple, frozenset, set)):
            raise ExpressionError(f"'in' needs a list or string, got {type(container).__name__}")
        found = item in container
        return not found if node[3] else found

    if tag == 'and':
        return bool(_evaluate(node[1], context)) and bool(_evaluate(node[2], context))

    if tag == 'or':
        return bool(_evaluate(node[1], context)) or bool(_evaluate(node[2], context))

    if tag == 'not':
        return not _evaluate(node[1], context)

    if tag == 'call':
        args = [_evaluate(arg, context) for arg in node[2]]
        try:
            return FUNCTIONS[node[1]](*args)
        except ExpressionError:
            raise
        except (TypeError, ValueError, AttributeError) as e:
            raise ExpressionError(f"{node[1]}() failed: {e}")

    raise ExpressionError(f"Unknown node type '{tag}'")


class Expression:
    """A parsed condition, reusable across evaluations."""

    def __init__(self, source: str, ast: tuple):
        self.source = source
        self.ast = ast

    def evaluate(self, context: Mapping[str, Any]) -> Any:
        """Evaluate against a context of plain values (dicts, lists, scalars)."""
        return _evaluate(self.ast, context)

    def test(self, context: Mapping[str, Any]) -> bool:
        """
        Evaluate as a condition.

        Returns:
            True or False; null counts as False

        Raises:
            ExpressionError: If the result is not a boolean
        """
        value = self.evaluate(context)
        if value is None:
            return False
        if not isinstance(value, bool):
            raise ExpressionError(f"Condition {self.source!r} returned {type(value).__name__}, expected boolean")
        return value

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


@lru_cache(maxsize=256)
def compile_expression(source: str) -> Expression:
    """Parse a condition. Results are cached by source text."""
    if source is None:
        raise ExpressionError("Empty expression")
    return Expression(source, _Parser(source).parse())


def evaluate(source: str, context: Mapping[str, Any]) -> Any:
    """Parse and evaluate in one step."""
    return compile_expression(source).evaluate(context)
