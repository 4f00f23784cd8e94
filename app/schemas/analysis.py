import datetime as dt

from pydantic import BaseModel, Field, model_validator


class AnalysisRequestIn(BaseModel):
    id_produto_quimico: int | None = None
    id_produto_biologico: int | None = None
    nome_produto_quimico: str | None = Field(default=None, max_length=128)
    nome_produto_biologico: str | None = Field(default=None, max_length=128)

    @model_validator(mode="after")
    def _needs_a_pair(self):
        by_id = self.id_produto_quimico and self.id_produto_biologico
        by_name = self.nome_produto_quimico and self.nome_produto_biologico
        if not (by_id or by_name):
            raise ValueError("Forneça id_produto_quimico & id_produto_biologico OU nome_produto_quimico & nome_produto_biologico")
        return self

    @property
    def chemical(self) -> int | str | None:
        return self.id_produto_quimico or self.nome_produto_quimico

    @property
    def biological(self) -> int | str | None:
        return self.id_produto_biologico or self.nome_produto_biologico


class AnalysisRequestOut(BaseModel):
    id: int
    id_usuario: int
    id_produto_quimico: int
    id_produto_biologico: int
    nome_produto_quimico: str | None = None
    nome_produto_biologico: str | None = None
    status: str
    prioridade: int
    resultado_final: str | None = None
    descricao_resultado: str | None = None
    data_solicitacao: dt.datetime
    data_resultado: dt.datetime | None = None

    @classmethod
    def from_model(cls, request, names: dict[int, str] | None = None) -> "AnalysisRequestOut":
        names = names or {}
        return cls(
            id=request.id,
            id_usuario=request.user_id,
            id_produto_quimico=request.chemical_product_id,
            id_produto_biologico=request.biological_product_id,
            nome_produto_quimico=names.get(request.chemical_product_id),
            nome_produto_biologico=names.get(request.biological_product_id),
            status=request.status,
            prioridade=request.priority,
            resultado_final=request.final_result,
            descricao_resultado=request.result_description,
            data_solicitacao=request.requested_at,
            data_resultado=request.result_at,
        )


class AnalysisRequestCreatedOut(BaseModel):
    solicitacao: AnalysisRequestOut
    custo_em_creditos: int
    saldo_antes: int
    saldo_depois: int


class ResultIn(BaseModel):
    resultado_final: str = Field(..., min_length=1)
    descricao_resultado: str | None = None
